"""
Kavita Client - async API client and multi-server session manager for
self-hosted Kavita comic, manga and book servers.

Authenticates against the Kavita REST API, refreshes expired sessions
transparently, keeps one client per registered server and searches
series across all of them.
"""

__version__ = "0.3.0"
