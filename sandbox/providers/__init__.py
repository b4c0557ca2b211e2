"""Environment provider implementations.

E2BProvider is imported lazily by the factory so the e2b SDK is only loaded
when that provider is configured.
"""

from sandbox.providers.local import LocalProvider

__all__ = ["LocalProvider"]
