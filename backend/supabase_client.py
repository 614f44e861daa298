"""
Supabase client for the metrics API.

One service-role client per process, created on first use. Endpoints receive
it through FastAPI's Depends(get_supabase) so tests can swap in a mock via
app.dependency_overrides.
"""

import logging
import os

from supabase import Client, create_client

logger = logging.getLogger(__name__)

_supabase_client = None


def get_supabase() -> Client:
    """Lazy-initialize the shared Supabase client. Raises RuntimeError if unconfigured."""
    global _supabase_client
    if _supabase_client is None:
        url = os.environ.get('SUPABASE_URL')
        key = os.environ.get('SUPABASE_SERVICE_KEY')
        if not (url and key):
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
        _supabase_client = create_client(url.strip(), key.strip())
        logger.info("Supabase client initialized")
    return _supabase_client


def reset_supabase() -> None:
    """Drop the cached client (used by tests that change the environment)."""
    global _supabase_client
    _supabase_client = None
