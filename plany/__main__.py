"""
plany/__main__.py — Plany command-line entry point.

Wires the application from configuration, then either submits transcripts
(from the command line, or one per line from stdin) and prints the resulting
entries once enrichment settles, or serves the web bridge with ``--web``.

    python -m plany "I ate a banana and drank 8oz of water"
    python -m plany --web --port 7860
"""

from __future__ import annotations

import argparse
import sys
import traceback
from typing import List, Optional

# ──────────────────────────────────────────────────────────────
# Argument parsing
# ──────────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="plany",
        description="Plany — voice health log with background nutrition enrichment",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument(
        "text",
        nargs="*",
        help="Transcript to log; reads one transcript per stdin line when omitted",
    )
    p.add_argument(
        "--config",
        default=None,
        help="Path to plany.yaml (defaults to $PLANY_CONFIG, then config/plany.yaml)",
    )
    p.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARN"],
        default=None,
        help="Minimum log level for stderr output (overrides config)",
    )
    p.add_argument(
        "--settle-timeout",
        type=float,
        default=60.0,
        help="Seconds to wait for pending enrichment before printing entries",
    )
    p.add_argument(
        "--web",
        action="store_true",
        help="Serve the FastAPI bridge instead of submitting transcripts",
    )
    p.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for the web bridge (overrides config)",
    )
    return p


# ──────────────────────────────────────────────────────────────
# Runners
# ──────────────────────────────────────────────────────────────


def _print_entries(app) -> None:
    for entry in reversed(app.store.list()):
        d = entry.to_dict()
        print(f"[{d['status']:<11}] {d['kind']:<10} {d['primary_text']}  {d['attributes']}")


def _run_submissions(app, transcripts: List[str], settle_timeout: float) -> int:
    exit_code = 0
    for text in transcripts:
        sub = app.controller.submit(text)
        print(f"[INFO] {sub.result}: {sub.reason}")
        if sub.result == "error":
            exit_code = 1

    if not app.orchestrator.wait_idle(timeout=settle_timeout):
        print(
            f"[WARN] {app.orchestrator.pending_count} enrichment job(s) still pending",
            file=sys.stderr,
        )
    _print_entries(app)
    return exit_code


def _run_web(app, host: str, port: int) -> int:
    from plany.web.app import start_web_server

    print(f"[INFO] Web bridge → http://{host}:{port}/health")
    print("       Press Ctrl-C to stop.")
    start_web_server(app, host=host, port=port)
    return 0


# ──────────────────────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────────────────────


def main(argv: Optional[List[str]] = None) -> int:
    """Application entry point. Returns process exit code."""
    args = _build_parser().parse_args(argv)

    from plany import bootstrap
    from plany.core.config import load_config
    from plany.core.errors import ConfigurationError
    from plany.core.logger import get_logger, set_stderr_level
    from plany.enrichment.estimator import MacroEstimator
    from plany.intent.classifier import KeywordClassifier
    from plany.intent.extractor import ChatActionExtractor
    from plany.store.event_store import EventStore

    log = get_logger()
    try:
        cfg = load_config(args.config)
    except (ConfigurationError, FileNotFoundError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2

    if cfg.enrichment.api_key is None:
        print(
            f"[WARN] ${cfg.enrichment.api_key_env} is not set; remote calls will fail",
            file=sys.stderr,
        )

    try:
        app = bootstrap.configure(
            store=EventStore(),
            enrichment_client=MacroEstimator(cfg.enrichment),
            classifier=KeywordClassifier(),
            extractor=ChatActionExtractor(cfg.enrichment),
            config=cfg,
        )
    except ConfigurationError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2
    if args.log_level:
        set_stderr_level(args.log_level)
    log.info("main", "args_parsed", {
        "web": args.web,
        "texts": len(args.text),
        "config": args.config,
    })

    exit_code = 0
    app.start()
    try:
        if args.web:
            exit_code = _run_web(app, cfg.web.host, args.port or cfg.web.port)
        else:
            transcripts = [" ".join(args.text)] if args.text else [
                line.strip() for line in sys.stdin if line.strip()
            ]
            exit_code = _run_submissions(app, transcripts, args.settle_timeout)
    except KeyboardInterrupt:
        print("\n[INFO] Interrupted — shutting down…")
    except Exception:  # noqa: BLE001
        tb = traceback.format_exc()
        print(tb, file=sys.stderr)
        log.critical("main", "unhandled_exception", {"traceback": tb})
        exit_code = 1
    finally:
        app.shutdown()
        log.flush()

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
