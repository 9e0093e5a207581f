"""Credential lookup used by providers when they first build an SDK client."""

import os


def get_env_secret(name: str) -> str | None:
    """Resolve a secret by name from the environment.

    ``SECRET_<name>`` wins over ``<name>`` so a deployment can shadow a
    developer key without unsetting it.

    Returns:
        The secret value, or None when neither variable is set.
    """
    value = os.getenv(f"SECRET_{name}") or os.getenv(name)
    return value or None
