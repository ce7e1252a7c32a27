"""CLI entry point for vibe-lottery."""
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from .config import LotteryConfig, load_config
from .main import LotteryApp

CONFIG_CANDIDATES = (
    "/etc/vibe-lottery/config.yaml",
    "./config.yaml",
)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Vibe Lottery ad rewards and casino service")
    parser.add_argument("--config", type=str, help="Path to config.yaml")
    parser.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--validate-config", action="store_true", help="Validate config and exit without starting")
    return parser.parse_args()


def find_config(explicit: str | None) -> str | None:
    if explicit:
        return explicit
    for candidate in CONFIG_CANDIDATES:
        if Path(candidate).exists():
            return candidate
    return None


def describe_config(config: LotteryConfig) -> list[str]:
    """One-line summaries of the settings operators most often get wrong."""
    spin_total = sum(o.probability for o in config.spin.outcomes)
    scratch_total = sum(p.probability for p in config.scratch.prizes)
    return [
        f"ledger: {config.database.path}",
        f"listen: {config.server.host}:{config.server.port}",
        f"prize pool base: {config.prize_pool.base_amount} "
        f"(+{config.prize_pool.increment_per_view}/view, "
        f"+{config.prize_pool.boosted_increment_per_view} boosted)",
        f"booster: {config.booster.ticket_multiplier}x for {config.booster.duration_hours}h, "
        f"evidence ≥ {config.booster.min_unique_entries} unique / "
        f"{config.booster.min_recent_entries} recent",
        f"spin odds sum: {spin_total:.3f}, scratch odds sum: {scratch_total:.3f}",
        f"conversion cap: {config.conversion.cap_percent}% of weekly organic tickets",
        f"admin routes: {'enabled' if config.admin.api_key else 'disabled'}",
        f"offerwall webhook: {'enabled' if config.offerwall.secret else 'disabled'}",
    ]


def reload_config(app: LotteryApp, logger: logging.Logger) -> None:
    """SIGHUP handler: swap in the config file's current contents."""
    try:
        app.reload_config()
    except Exception as e:
        logger.error("Config reload failed, keeping current config: %s", e)


async def main_async() -> None:
    args = parse_args()
    setup_logging(args.log_level)
    logger = logging.getLogger("lottery")

    config_path = find_config(args.config)
    if not config_path:
        logger.error("No config file found. Use --config or place config.yaml in CWD.")
        sys.exit(1)

    try:
        config = load_config(config_path)
    except Exception as e:
        logger.error("Config validation failed: %s", e)
        sys.exit(1)

    for line in describe_config(config):
        logger.info("%s", line)
    if args.validate_config:
        logger.info("Config is valid.")
        return

    app = LotteryApp(config_path, config=config)

    # Signal handling (Unix only; Windows uses KeyboardInterrupt)
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(app.stop()))
        loop.add_signal_handler(signal.SIGHUP, reload_config, app, logger)

    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()


def main() -> None:
    """Sync entry point for pyproject.toml [project.scripts]."""
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
