"""
lms_core - Offline cache and server-wins sync reconciliation for the LMS client.

Subpackages:
    cache     In-memory TTL/LRU cache for remote responses
    offline   Offline storage, snapshot fetching and conflict resolution
    errors    Exception hierarchy and handlers
    logging   Logging setup
    services  Service base class and result container
"""

__version__ = "0.1.0"
