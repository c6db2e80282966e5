from __future__ import annotations

import argparse

from mediastore.config import settings
from mediastore.content_index import IndexedContentStore
from mediastore.logging_utils import configure_logging, get_logger


def main() -> None:
    configure_logging(settings.log_level)
    logger = get_logger(__name__)
    parser = argparse.ArgumentParser(
        description="Delete pending media entries left behind by failed ingest jobs."
    )
    parser.add_argument(
        "--min-age-s",
        type=int,
        default=settings.pending_purge_min_age_s,
        help="Only purge pending entries created at least this many seconds ago.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report how many entries would be purged without deleting them.",
    )
    args = parser.parse_args()

    if args.min_age_s < 0:
        raise SystemExit("--min-age-s must be >= 0")
    if settings.store_backend != "indexed":
        raise SystemExit("purge_pending requires STORE_BACKEND=indexed")

    store = IndexedContentStore()
    purged = store.purge_pending(args.min_age_s, dry_run=args.dry_run)
    logger.info(
        "purge_pending.complete purged=%s min_age_s=%s dry_run=%s",
        purged,
        args.min_age_s,
        args.dry_run,
    )


if __name__ == "__main__":
    main()
