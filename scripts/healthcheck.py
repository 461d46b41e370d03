"""Probe vector backends and report which ones can serve requests.

Usage:
    python -m scripts.healthcheck                 # every registered backend
    python -m scripts.healthcheck faiss qdrant    # selected backends

Exits non-zero when any probed backend is unavailable.
"""

import argparse
from typing import Iterable, List

from retrieval_core.config import RetrievalSettings
from retrieval_core.logging_setup import configure_logging, get_logger
from vector_backends.manager import (
    get_available_backends,
    get_backend_cache,
    is_backend_available,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Check that vector backends initialize and pass health checks."
    )
    parser.add_argument(
        "backends",
        nargs="*",
        help="Backend names or aliases to probe (default: all registered).",
    )
    parser.add_argument("--plugin-url", default=None)
    parser.add_argument("--data-dir", default=None)
    parser.add_argument("--log-level", default=None, help="Override HYBRID_RECALL_LOG_LEVEL.")
    parser.add_argument("--log-format", choices=["plain", "json"], default=None)
    return parser


def check_backends(names: List[str], settings: RetrievalSettings) -> dict:
    """Return {name: available} for each requested backend."""
    return {name: is_backend_available(name, settings) for name in names}


def main(argv: Iterable[str] | None = None) -> int:
    args = _build_parser().parse_args(list(argv) if argv is not None else None)
    if args.log_level or args.log_format:
        configure_logging(level=args.log_level, fmt=args.log_format, force=True)
    logger = get_logger(__name__)

    settings = RetrievalSettings()
    if args.plugin_url:
        settings.plugin_url = args.plugin_url
    if args.data_dir:
        settings.data_dir = args.data_dir

    names = args.backends or get_available_backends()
    logger.info("healthcheck_start", extra={"backends": names})
    results = check_backends(names, settings)

    snapshot = get_backend_cache().snapshot()
    for name, ok in results.items():
        key = get_backend_cache().registry.normalize(name)
        error = (snapshot.get(key) or {}).get("error")
        line = f"{name}: {'OK' if ok else 'UNAVAILABLE'}"
        if error:
            line += f" ({error})"
        print(line)

    failed = [name for name, ok in results.items() if not ok]
    logger.info("healthcheck_complete", extra={"failed": failed})
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
