"""
API Routes Package
"""
from pars.api.routes import updates

__all__ = [
    "updates",
]
