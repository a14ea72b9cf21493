"""Persistence repositories for the learner engine."""

from .learner_state import LearnerStateRepository, MappingLookup, learner_state

__all__ = ["LearnerStateRepository", "MappingLookup", "learner_state"]
