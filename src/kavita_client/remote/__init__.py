"""Server registration, credential persistence and URL handling.

Import the registry from ``kavita_client.remote.server_registry``; this
package is imported by the API clients for store keys, so it stays free of
client imports itself.
"""
