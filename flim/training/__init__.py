"""
Marker-based learning for FLIM
"""

from .learner import Learner, learn_model, learn_model_pca, learn_layer

__all__ = [
    'Learner',
    'learn_model',
    'learn_model_pca',
    'learn_layer',
]
