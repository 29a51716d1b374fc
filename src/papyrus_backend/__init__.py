"""
Papyrus Backend - asynchronous PDF generation service

This package provides a FastAPI-based web service and a set of queue workers
that turn JSON document requests into signed, downloadable PDFs. It enables:

- Per-caller admission control with tiered API keys
- Idempotent job submission
- A durable three-stage pipeline (generate, sign, deliver) with retries
- Bounded, pooled rendering through the typst engine
- Job status tracking with a full event history

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - middleware: Admission control and request logging
    - pipeline: Submission and query service used by the API
    - workers: Stage workers, janitor and the ``papyrus-worker`` command
    - admission / idempotency: Quota accounting and token cache
    - page_pool / render: Render context pool and template rendering
    - database / job_queue: Job status store and pipeline queues
    - storage: S3 and local object stores
    - configuration: OmegaConf defaults, environment and validation

Usage:
    Run the API server with:
        uvicorn papyrus_backend.main:app --host 0.0.0.0 --port 4000

    Run one worker group per stage:
        papyrus-worker generate --concurrency 4
        papyrus-worker sign
        papyrus-worker deliver
        papyrus-worker janitor
"""

__version__ = "1.0.0"
