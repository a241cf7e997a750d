from agent_harness.experiments.experiment_service import ExperimentService
from agent_harness.experiments.trigger_service import ImpactLevel, TriggerService
from agent_harness.experiments.variant_service import VariantService

__all__ = ["ExperimentService", "TriggerService", "ImpactLevel", "VariantService"]
