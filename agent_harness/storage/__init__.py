from agent_harness.storage.database import HarnessDatabase

__all__ = ["HarnessDatabase"]
