"""
parley - Matrix E2EE bridge to a conversational agent
Entry point and orchestration.

Startup sequence:
  1. Load config.yaml
  2. Configure logging
  3. Ensure data/ directories exist, initialise SQLite
  4. Build the agent client (and Whisper client if configured)
  5. Start the Matrix task (crypto bootstrap, first sync, key recovery)
  6. Await shutdown signals, or a fatal startup error from Matrix
"""

import asyncio
import logging
import logging.handlers
import signal
import sys
from pathlib import Path
from typing import Optional

import yaml
from openai import AsyncOpenAI

from parley.backends.agent_client import AgentClient, AgentConfig
from parley.e2ee.types import CryptoInitError, E2EETimings, InitialSyncTimeout
from parley.infra import database, paths
from parley.interfaces.matrix_adapter import MatrixAdapter, MatrixConfig

CONFIG_FILE = Path("config.yaml")
LOG_DIR = Path("logs")


# ---------------------------------------------------------------------------
# Configuration loading
# ---------------------------------------------------------------------------

def load_config(path: Path = CONFIG_FILE) -> dict:
    if not path.exists():
        print(f"ERROR: {path} not found. Copy config.yaml.example and fill in your settings.")
        sys.exit(1)
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(cfg: dict) -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    level_name = (cfg.get("logging") or {}).get("level", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)-20s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(fmt)
    console.setLevel(level)

    fh = logging.handlers.TimedRotatingFileHandler(
        LOG_DIR / "parley.log",
        when="midnight",
        backupCount=14,
        encoding="utf-8",
    )
    fh.setFormatter(fmt)
    fh.setLevel(logging.DEBUG)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(console)
    root.addHandler(fh)
    # mautrix logs every sync request at DEBUG.
    logging.getLogger("mau").setLevel(max(level, logging.INFO))


# ---------------------------------------------------------------------------
# Data file bootstrapping
# ---------------------------------------------------------------------------

def bootstrap_data_files(store_dir: Path = paths.MATRIX_STORE_DIR) -> None:
    """Ensure required data directories exist."""
    paths.DATA_DIR.mkdir(parents=True, exist_ok=True)
    Path(store_dir).mkdir(parents=True, exist_ok=True)
    paths.VOICE_DIR.mkdir(parents=True, exist_ok=True)


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

class ShutdownCoordinator:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.exit_code = 0

    def request_shutdown(self, exit_code: int = 0) -> None:
        self.exit_code = max(self.exit_code, exit_code)
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def build_matrix_config(raw: dict) -> MatrixConfig:
    if not raw.get("homeserver") or not raw.get("user_id"):
        raise ValueError("matrix.homeserver and matrix.user_id are required")
    return MatrixConfig.from_dict(raw)


def _whisper_client(raw: Optional[dict], agent_cfg: AgentConfig) -> tuple[Optional[AsyncOpenAI], str, str]:
    if not raw or not raw.get("enabled", True):
        return None, "", ""
    client = AsyncOpenAI(
        api_key=raw.get("api_key") or agent_cfg.api_key or "none",
        base_url=raw.get("base_url") or agent_cfg.base_url,
    )
    return client, raw.get("model", "whisper-1"), raw.get("language", "")


async def main() -> int:
    cfg = load_config()
    setup_logging(cfg)
    logger = logging.getLogger("main")
    logger.info("parley starting up")

    matrix_cfg = build_matrix_config(cfg.get("matrix") or {})
    timings = E2EETimings.from_dict(cfg.get("e2ee"))

    bootstrap_data_files(Path(matrix_cfg.store_dir))
    database.init_db()

    agent_cfg = AgentConfig.from_dict(cfg.get("agent"))
    agent = AgentClient(agent_cfg)
    whisper, whisper_model, whisper_language = _whisper_client(cfg.get("whisper"), agent_cfg)

    matrix = MatrixAdapter(
        matrix_cfg,
        agent,
        timings=timings,
        whisper_client=whisper,
        whisper_model=whisper_model,
        whisper_language=whisper_language,
    )

    shutdown = ShutdownCoordinator()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.request_shutdown)

    def _on_matrix_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, (CryptoInitError, InitialSyncTimeout)):
            logger.critical("Fatal startup error: %s", exc)
            shutdown.request_shutdown(1)
        elif exc is not None:
            logger.error("Matrix task failed: %s", exc, exc_info=exc)
            shutdown.request_shutdown(1)
        else:
            shutdown.request_shutdown()

    matrix_task = asyncio.create_task(matrix.run(), name="matrix")
    matrix_task.add_done_callback(_on_matrix_done)
    logger.info("All components started (homeserver %s)", matrix_cfg.homeserver)

    await shutdown.wait()
    logger.info("Shutdown requested - stopping components gracefully")

    matrix.stop()
    if not matrix_task.done():
        matrix_task.cancel()
    try:
        await asyncio.wait_for(asyncio.gather(matrix_task, return_exceptions=True), timeout=10.0)
    except asyncio.TimeoutError:
        logger.warning("Matrix task did not stop within 10 s, forcing exit")

    logger.info("parley shutdown complete")
    return shutdown.exit_code


def run() -> None:
    """Entry point for the `parley` console script."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
