__all__ = [
    "Feature",
    "FunctionalRequirement",
    "Scenario",
    "Specification",
    "TestSuite",
    "UserStory",
]

from .models import Feature, FunctionalRequirement, Scenario, Specification, TestSuite, UserStory
