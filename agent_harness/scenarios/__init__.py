from agent_harness.scenarios.goal_tests import GOAL_TESTS, get_goal_test, list_goal_tests
from agent_harness.scenarios.personas import STANDARD_PERSONAS, get_persona

__all__ = ["GOAL_TESTS", "get_goal_test", "list_goal_tests", "STANDARD_PERSONAS", "get_persona"]
