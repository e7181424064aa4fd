"""Utility helpers shared across tgrelay modules."""
