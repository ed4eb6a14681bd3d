#!/usr/bin/env python3
"""
Start a Celery worker (with embedded beat) for attempt expiry and heartbeat purging.

Extra command-line arguments are passed through to ``celery worker``.
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from exam_integrity.core.celery_app import celery_app

if __name__ == '__main__':
    celery_app.worker_main(["worker", "--beat", "--loglevel=info", *sys.argv[1:]])
