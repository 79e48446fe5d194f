"""Logging configuration for attestchat."""

import logging
from pathlib import Path


def setup_logging(log_file: str | None = "log/attestchat.log", level: int = logging.INFO, console: bool = True) -> None:
    """Setup logging to file and optionally stderr."""

    handlers: list[logging.Handler] = []
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, mode="a", encoding="utf-8"))

    # The interactive `ask` command keeps stderr quiet so it doesn't interleave with the transcript
    if console:
        handlers.append(logging.StreamHandler())

    # Configure root logger
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers or [logging.NullHandler()],
        force=True,  # Overwrite existing config
    )

    # Suppress noisy third-party logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("sse_starlette").setLevel(logging.WARNING)

    logging.getLogger("attestchat").setLevel(level)

    if log_file:
        logging.info("=" * 60)
        logging.info(f"attestchat logging started. Writing to {Path(log_file).absolute()}")
        logging.info("=" * 60)
