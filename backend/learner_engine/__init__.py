"""Adaptive learner model engine."""
