"""Application entry point for the WebAuthn gateway."""
from __future__ import annotations

import logging
import os
from typing import Any, Mapping, Optional

from flask import Flask

from .config import create_orchestrator, load_settings
from .orchestrator import CeremonyOrchestrator
from .routes import EXTENSION_KEY, bp


def create_app(
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    orchestrator: Optional[CeremonyOrchestrator] = None,
) -> Flask:
    """Build the Flask application and the orchestrator it serves.

    ``overrides`` replaces individual settings read from the environment. A
    ready ``orchestrator`` (for example one wired to fakes) skips building
    the directory and the engine from settings.
    """

    app = Flask(__name__)
    app.config.update(load_settings())
    if overrides:
        app.config.update(overrides)

    if orchestrator is None:
        orchestrator = create_orchestrator(app.config)
    app.extensions[EXTENSION_KEY] = orchestrator
    app.register_blueprint(bp)

    app.logger.info(
        "WebAuthn gateway ready for RP %s using %s",
        app.config["FIDO_SERVER_RP_ID"],
        type(orchestrator.directory).__name__,
    )
    return app


app = create_app()


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    app.run(
        host=os.environ.get("WEBAUTHN_HOST", "localhost"),
        port=int(os.environ.get("WEBAUTHN_PORT", "8080")),
        debug=False,
    )


__all__ = ["app", "create_app", "main"]


if __name__ == "__main__":  # pragma: no cover - convenience script entry point.
    main()
