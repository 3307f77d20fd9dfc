"""Create the schema and seed default roles, taxonomy and an admin user.

The administrator's email, password and display name come from the
``INITIAL_ADMIN_EMAIL``, ``INITIAL_ADMIN_PASSWORD`` and ``INITIAL_ADMIN_NAME``
environment variables.  Running the script against an already seeded
database changes nothing.
"""

import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def _get_bootstrap():
    """Import the bootstrap module lazily.

    ``DATABASE_URL`` is read when the models module is first imported, so the
    import has to happen after the caller has prepared the environment.
    """

    from policywiki import bootstrap

    return bootstrap


def seed() -> dict:
    """Create tables if needed and seed default data."""

    result = _get_bootstrap().init_db()
    logging.getLogger(__name__).info(
        "%s; %s", result["init"]["message"], result["seed"]["message"]
    )
    return result


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    seed()
