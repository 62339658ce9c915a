# budget/server.py
from __future__ import annotations

import logging
import sys
import threading

import uvicorn

from .config import load_settings
from .ledger import LedgerError
from .logging import configure_json_logging
from .service_http import build_context, create_app


def _http_server(app, host: str, port: int, **ssl) -> uvicorn.Server:
    config = uvicorn.Config(app, host=host, port=port, log_config=None, **ssl)
    return uvicorn.Server(config)


def main() -> int:
    settings = load_settings()
    configure_json_logging(level=settings.log_level)
    log = logging.getLogger("budget.server")

    try:
        context = build_context(settings)
    except OSError:
        log.critical("failed to open audit logs or users file", exc_info=True)
        return 1
    except LedgerError:
        log.critical("failed to load ledger state", exc_info=True)
        return 1

    app = create_app(context)
    try:
        plain = _http_server(app, settings.host, settings.http_port)
        if not settings.tls_available():
            log.info(
                "no %s/%s found; HTTPS disabled, running in HTTP-only mode",
                settings.cert_file,
                settings.key_file,
            )
            log.info("HTTP server listening on %s:%d", settings.host, settings.http_port)
            plain.run()
            return 0

        # Plain HTTP in the background, HTTPS owns the main thread (and the
        # signal handlers uvicorn installs there).
        t = threading.Thread(target=plain.run, name="budget-http", daemon=True)
        t.start()
        log.info("HTTP server listening on %s:%d", settings.host, settings.http_port)

        tls = _http_server(
            app,
            settings.host,
            settings.https_port,
            ssl_certfile=settings.cert_file,
            ssl_keyfile=settings.key_file,
        )
        log.info("HTTPS server listening on %s:%d", settings.host, settings.https_port)
        tls.run()
        plain.should_exit = True
        t.join(timeout=5.0)
        return 0
    finally:
        context.close()


if __name__ == "__main__":
    sys.exit(main())
