"""Entry classification: frequency model and classifier."""

from .classifier import (
    Classifier,
    ClassificationResult,
    ClassifierStatistics,
    Prediction,
)
from .model import ClassifierModel, ModelSnapshot

__all__ = [
    "Classifier",
    "ClassificationResult",
    "ClassifierStatistics",
    "ClassifierModel",
    "ModelSnapshot",
    "Prediction",
]
