"""Estimators built on the EP solver."""

from .classifier import LaplaceEPClassifier

__all__ = ["LaplaceEPClassifier"]
