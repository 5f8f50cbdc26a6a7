"""Services package: expose all concrete services from one import."""
from .library_service import LibraryService
from .session_service import SessionService

__all__ = [
    'LibraryService',
    'SessionService',
]
