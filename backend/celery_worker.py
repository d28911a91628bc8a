from __future__ import annotations

import sys

from unishare.core.config import settings
from unishare.worker import celery_app


def main(argv: list[str] | None = None) -> None:
    extra = sys.argv[1:] if argv is None else argv
    # --beat runs the stale-upload purge schedule inside this worker
    celery_app.worker_main(argv=["worker", "--beat", f"--loglevel={settings.log_level.lower()}", "-P", "solo", *extra])


if __name__ == "__main__":
    main()
