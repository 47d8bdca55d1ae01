"""Route modules for the precast import API.

Each module exports a ``router`` (APIRouter instance) that the app includes.
"""

from precast_import.web.routes import jobs

__all__ = ["jobs"]
