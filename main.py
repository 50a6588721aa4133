#!/usr/bin/env python3
"""Main entry point for auditlog.

Builds an audit logger from the environment and serves the audit API.
"""

import os

from auditlog.api.gateway import create_app
from auditlog.audit.config import create_audit_logger_from_env
from auditlog.audit.lifecycle import install_shutdown_handlers
from auditlog.common.config import get_settings
from auditlog.common.logging import get_logger

logger = get_logger(__name__)


def main():
    """Main entry point."""
    import uvicorn

    settings = get_settings()
    audit_logger = create_audit_logger_from_env(settings, config_file=os.getenv("AUDIT_CONFIG_FILE"))
    install_shutdown_handlers(audit_logger, signals=())
    logger.info(
        f"auditlog initialized in {settings.environment.value} mode "
        f"with {settings.storage_type.value} storage"
    )

    uvicorn.run(
        create_app(audit_logger),
        host=os.getenv("AUDIT_API_HOST", "0.0.0.0"),
        port=int(os.getenv("AUDIT_API_PORT", "8000")),
        log_level="info",
    )


if __name__ == "__main__":
    main()
