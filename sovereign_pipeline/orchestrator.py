"""
Sovereign Decision Pipeline — Service entrypoint.

Central startup that:
1. Configures structured logging
2. Creates the ledger tables and the decision pipeline
3. Verifies the default jurisdiction's audit chain
4. Serves the HTTP API

This is the entrypoint for the service container.
"""

from __future__ import annotations

import logging
import sys

import structlog
import uvicorn

from sovereign_pipeline.config import settings

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure structured logging."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.getLevelName(settings.log_level),
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if settings.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_pipeline():
    """Create the pipeline and hand it to the API state."""
    from sovereign_pipeline.api.app import state as api_state
    from sovereign_pipeline.pipeline import DecisionPipeline

    pipeline = DecisionPipeline.from_settings(settings)
    api_state.pipeline = pipeline
    return pipeline


def main() -> None:
    """Start the API server."""
    configure_logging()
    log = structlog.get_logger()

    log.info(
        "omega.orchestrator.starting",
        model=settings.omega_model,
        database_url=settings.database_url,
        access_code_required=bool(settings.omega_access_code),
    )

    pipeline = build_pipeline()
    log.info("omega.orchestrator.pipeline_ready")

    chain = pipeline.audit.verify(settings.default_jurisdiction)
    if not chain.is_valid:
        log.critical(
            "omega.orchestrator.integrity_failure",
            jurisdiction=settings.default_jurisdiction,
            broken_at=chain.broken_at,
        )

    from sovereign_pipeline.api.app import app

    try:
        uvicorn.run(
            app,
            host=settings.api_host,
            port=settings.api_port,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        log.info("omega.orchestrator.shutdown")
    except Exception as e:
        log.exception("omega.orchestrator.fatal_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
