import os
import asyncio
from datetime import timedelta
from typing import List

from couchbase.auth import PasswordAuthenticator
from acouchbase.cluster import Cluster as AsyncCluster
from couchbase.options import ClusterOptions

# Environment variables
USERNAME = os.environ.get('COUCHBASE_USERNAME', '')
PASSWORD = os.environ.get('COUCHBASE_PASSWORD', '')
DEFAULT_BUCKET_NAME = os.environ.get('COUCHBASE_BUCKET', '')
DEFAULT_SCOPE_NAME = os.environ.get('COUCHBASE_SCOPE', '_default')
HOST = os.environ.get('COUCHBASE_HOST', '')
PROTOCOL = os.environ.get('COUCHBASE_PROTOCOL', 'couchbase')

VALID_PROTOCOLS = ('couchbase', 'couchbases')


def validate_settings() -> List[str]:
    """Return a list of problems with the Couchbase environment settings."""
    errors = []
    if not USERNAME:
        errors.append("COUCHBASE_USERNAME is missing or empty")
    if not PASSWORD:
        errors.append("COUCHBASE_PASSWORD is missing or empty")
    if not HOST:
        errors.append("COUCHBASE_HOST is missing or empty")
    if not DEFAULT_BUCKET_NAME:
        errors.append("COUCHBASE_BUCKET is missing or empty")
    if PROTOCOL not in VALID_PROTOCOLS:
        errors.append(f"COUCHBASE_PROTOCOL '{PROTOCOL}' is invalid. Must be one of {VALID_PROTOCOLS}")
    return errors


_errors = validate_settings()
if _errors:
    raise ValueError("Invalid Couchbase Configuration:\n" + "\n".join(_errors))

auth = PasswordAuthenticator(USERNAME, PASSWORD)

# Module-level cluster cache
_cluster = None


async def get_cluster(max_retries: int = 10, initial_delay: float = 1.0, max_delay: float = 30.0):
    """
    Returns a cached Couchbase cluster connection.
    Connects on first use, retrying with exponential backoff so the API can
    start before the database container is ready.
    """
    global _cluster
    if _cluster is None:
        url = f"{PROTOCOL}://{HOST}"
        delay = initial_delay

        for attempt in range(1, max_retries + 1):
            try:
                _cluster = await AsyncCluster.connect(url, ClusterOptions(auth))
                break
            except Exception:
                if attempt == max_retries:
                    raise
                await asyncio.sleep(delay)
                delay = min(delay * 2, max_delay)

        await _cluster.wait_until_ready(timedelta(seconds=50))
    return _cluster


async def check_connection():
    """
    Explicitly checks the connection to the Couchbase cluster.
    Useful for startup checks.
    """
    cluster = await get_cluster()
    await cluster.ping()
