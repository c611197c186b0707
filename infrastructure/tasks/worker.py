"""Entry point for a payments worker consuming both queues.

Refunds get their own queue so a backlog of maintenance sweeps never delays
them; a single local worker listens on both.
"""
from __future__ import annotations

import sys

from .config.celery import celery_app


def main(argv: list[str] | None = None) -> None:
    args = argv if argv is not None else sys.argv[1:]
    celery_app.worker_main(
        argv=["worker", "--loglevel=INFO", "--queues=refunds,default", "--hostname=payments@%h", *args]
    )


if __name__ == "__main__":
    main()
