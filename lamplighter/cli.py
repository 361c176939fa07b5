"""Run scheduled lighting jobs and serve the HTTP control API.

    lamplighter --config config.json --listen 0.0.0.0:9000

The local time zone is taken from the TZ environment variable.
"""

import asyncio
import datetime
import logging
from optparse import OptionParser, Values
import os
import sys
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from aiohttp import web

from .base_device import BaseDevice
from .config import Config, create_device, create_jobs, load_config
from .const import DEFAULT_CONFIG_FILE, DEFAULT_LISTEN_HOST, DEFAULT_LISTEN_PORT
from .dispatcher import Dispatcher
from .exceptions import ConfigError, LamplighterError
from .solar import AstralSolarOracle
from .web import create_app

_LOGGER = logging.getLogger(__name__)


def parseArgs(argv: Optional[List[str]] = None) -> Tuple[Values, Any]:
    parser = OptionParser()
    parser.description = (
        "Schedule lights and relays around sunrise, sunset and cron "
        "expressions, and control them over HTTP."
    )
    parser.add_option(
        "-c",
        "--config",
        dest="config",
        default=DEFAULT_CONFIG_FILE,
        help="Path to the JSON configuration file",
    )
    parser.add_option(
        "-l",
        "--listen",
        dest="listen",
        default=f"{DEFAULT_LISTEN_HOST}:{DEFAULT_LISTEN_PORT}",
        help="Address to serve the HTTP API on, as HOST:PORT",
        metavar="HOST:PORT",
    )
    parser.add_option(
        "--run-missed",
        action="store_true",
        dest="run_missed",
        default=False,
        help="At startup, run solar jobs whose trigger already passed today",
    )
    parser.add_option(
        "-v",
        "--debug",
        action="store_true",
        dest="debug",
        default=False,
        help="Enable debug logging",
    )
    (options, args) = parser.parse_args(argv)
    if args:
        parser.error("unexpected arguments: " + " ".join(args))
    try:
        options.host, options.port = parse_listen(options.listen)
    except ValueError as ex:
        parser.error(str(ex))
    return (options, args)


def parse_listen(listen: str) -> Tuple[str, int]:
    host, sep, port = listen.rpartition(":")
    if not sep:
        host, port = listen, str(DEFAULT_LISTEN_PORT)
    try:
        port_number = int(port)
    except ValueError as ex:
        raise ValueError(f"invalid listen address {listen!r}") from ex
    if not 0 < port_number < 65536:
        raise ValueError(f"invalid listen port {port_number}")
    return host or DEFAULT_LISTEN_HOST, port_number


def local_timezone() -> Optional[datetime.tzinfo]:
    """Return the zone named by TZ, or None to use the system local time."""
    name = os.environ.get("TZ")
    if not name:
        return None
    try:
        return ZoneInfo(name.lstrip(":"))
    except (ZoneInfoNotFoundError, ValueError) as ex:
        raise ConfigError(f"unknown time zone {name!r}") from ex


async def async_setup_devices(config: Config) -> Dict[str, BaseDevice]:
    """Identify every configured device; unreachable ones are skipped."""
    devices: Dict[str, BaseDevice] = {}
    for label, device_data in config.devices.items():
        device = create_device(label, device_data)
        try:
            await device.async_setup()
        except LamplighterError as ex:
            _LOGGER.warning("%s: failed to connect, skipping: %s", label, ex)
            continue
        _LOGGER.info("%s: connected to %s", label, device)
        devices[label] = device
    return devices


async def async_run(options: Values) -> None:
    config = load_config(options.config)
    tzinfo = local_timezone()
    devices = await async_setup_devices(config)

    dispatcher = Dispatcher(tzinfo=tzinfo)
    jobs = create_jobs(config, devices, AstralSolarOracle())
    for job in jobs:
        dispatcher.add_job(job)
    if options.run_missed:
        dispatcher.run_missed()
    dispatcher.start()

    runner = web.AppRunner(create_app(devices))
    await runner.setup()
    site = web.TCPSite(runner, options.host, options.port)
    await site.start()
    _LOGGER.info(
        "Serving %s devices and %s jobs on %s:%s",
        len(devices),
        len(jobs),
        options.host,
        options.port,
    )
    try:
        await asyncio.Event().wait()
    finally:
        await dispatcher.async_stop()
        await runner.cleanup()


def main(argv: Optional[List[str]] = None) -> None:
    (options, _) = parseArgs(argv)
    logging.basicConfig(
        level=logging.DEBUG if options.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(async_run(options))
    except ConfigError as ex:
        _LOGGER.error("Invalid configuration: %s", ex)
        sys.exit(1)
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    main()
