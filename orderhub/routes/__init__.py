"""
Order Hub - Routes Package

API routers for the case engine.
"""

from .auth import router as auth_router
from .cases import router as cases_router, set_dependencies as set_cases_deps

__all__ = [
    'auth_router',
    'cases_router', 'set_cases_deps',
]
