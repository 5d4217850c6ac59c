"""GEI Migration Tool

Keeps a target GitHub organization in sync with a source organization by
driving GitHub Enterprise Importer (``gh gei``) migrations and tracking every
repository's migration state.
"""

__version__ = '0.1.0'
