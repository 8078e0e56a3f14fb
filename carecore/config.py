"""
Environment-driven configuration for the CareCore API.
"""

import os

# --- Token verification ---
JWT_SECRET = os.environ.get('CARECORE_JWT_SECRET', '')
JWT_ISSUER = os.environ.get('CARECORE_JWT_ISSUER', '')
JWT_ALGORITHMS = [
    a.strip() for a in os.environ.get('CARECORE_JWT_ALGORITHMS', 'HS256').split(',') if a.strip()
]

# --- Persistence ---
DATABASE_URI = os.environ.get('SQLALCHEMY_DATABASE_URI', 'sqlite:///carecore.db')

# Ownership and record lookups must fail fast (milliseconds)
LOOKUP_TIMEOUT_MS = int(os.environ.get('CARECORE_LOOKUP_TIMEOUT_MS', '2000'))

# --- Pagination ---
DEFAULT_PAGE_SIZE = int(os.environ.get('CARECORE_DEFAULT_PAGE_SIZE', '10'))
MAX_PAGE_SIZE = int(os.environ.get('CARECORE_MAX_PAGE_SIZE', '100'))


def get_jwt_secret():
    """Read the secret at call time so tests can override it."""
    return os.environ.get('CARECORE_JWT_SECRET', JWT_SECRET)


def engine_options(database_uri):
    """
    SQLAlchemy engine options for the configured database.

    PostgreSQL gets a statement timeout so a stalled ownership lookup
    surfaces as an error instead of hanging the request.
    """
    if database_uri.startswith(('postgresql', 'postgres')):
        return {
            'pool_pre_ping': True,
            'connect_args': {'options': f'-c statement_timeout={LOOKUP_TIMEOUT_MS}'},
        }
    return {}
