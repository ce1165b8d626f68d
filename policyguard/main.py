"""Entry point for the PolicyGuard controller."""

import kopf

from policyguard import operator  # noqa: F401  registers the kopf handlers
from policyguard.core.config import get_settings


def main() -> None:
    settings = get_settings()
    kopf.run(clusterwide=True, liveness_endpoint=settings.liveness_endpoint)


if __name__ == "__main__":
    main()
