"""Command line entry point: parse options and keep re-authenticating."""

from __future__ import annotations

import argparse
import os
import re
import signal
import socket
import subprocess
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from ipaddress import IPv4Address

from .auth import AuthError, Authenticator, Outcome
from .info import VERSION_SIZE, Settings, hex_to_bytes
from .tracelog import LogLevel, LogType, TraceLog

EXIT_USAGE = 255
MAX_RETRY_DELAY = 256

_HELP = (
    "Usage: {prog} --username <username> --password <password> [options...]\n"
    " -i, --iface <ifname> Interface to perform authentication.\n"
    " -n, --dns <dns> DNS server address to be sent to UDP server.\n"
    " -H, --hostname <hostname>\n"
    " -s, --udp-server <server>\n"
    " -c, --cli-version <client version>\n"
    " -T, --net-time <time> The time you are allowed to access internet. e.g. 6:10\n"
    " -h, --hash <hash> DrAuthSvr.dll hash value.\n"
    " -E, --online-hook <command> Command to be execute after EAP authentication success.\n"
    " -Q, --offline-hook <command> Command to be execute when you are forced offline at nignt.\n"
    " -D, --debug\n"
    " -o, --logoff\n"
)

_NET_TIME_RE = re.compile(r"\s*\+?(\d+):\s*\+?(\d+)")
_INT_RE = re.compile(r"\s*([+-]?\d+)")


class _UsageError(ValueError):
    """The command line could not be understood at all."""


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise _UsageError(message)


class _Terminated(Exception):
    """Raised from the signal handler to leave the authentication loop."""


@dataclass
class Options:
    """Everything the command line decides."""

    settings: Settings = field(default_factory=Settings)
    net_time: tuple[int, int] | None = None
    log_level: LogLevel = LogLevel.INF
    logoff: bool = False
    warnings: list[str] = field(default_factory=list)


def parse_net_time(text: str) -> tuple[int, int]:
    """Parse ``H:M`` into hour and minute; raise ValueError if out of range."""
    match = _NET_TIME_RE.match(text)
    if not match:
        raise ValueError("Time invalid!")
    hour = int(match.group(1)) & 0xFF
    minute = int(match.group(2)) & 0xFF
    if hour >= 24 or minute >= 60:
        raise ValueError("Time invalid!")
    return hour, minute


def seconds_until(hour: int, minute: int, now: datetime) -> int | None:
    """Seconds from ``now`` until ``hour:minute`` today, or None if already past."""
    target = hour * 60 + minute
    current = now.hour * 60 + now.minute
    if target <= current:
        return None
    return (target - current) * 60 - now.second


def _address(text: str, what: str) -> IPv4Address:
    try:
        return IPv4Address(socket.inet_aton(text))
    except (OSError, ValueError) as exc:
        raise ValueError(f"{what} invalid!") from exc


def _atoi(text: str) -> int:
    match = _INT_RE.match(text)
    return int(match.group(1)) if match else 0


def _build_parser() -> _Parser:
    parser = _Parser(add_help=False, prog="scutclient")
    parser.add_argument("-u", "--username")
    parser.add_argument("-p", "--password")
    parser.add_argument("-i", "--iface")
    parser.add_argument("-n", "--dns")
    parser.add_argument("-H", "--hostname")
    parser.add_argument("-s", "--udp-server", dest="udp_server")
    parser.add_argument("-c", "--cli-version", dest="cli_version")
    parser.add_argument("-T", "--net-time", dest="net_time")
    parser.add_argument("-h", "--hash")
    parser.add_argument("-E", "--online-hook", dest="online_hook")
    parser.add_argument("-Q", "--offline-hook", dest="offline_hook")
    parser.add_argument("-D", "--debug", nargs="?", const="", default=None)
    parser.add_argument("-o", "--logoff", action="store_true")
    return parser


def parse_args(argv: list[str]) -> Options:
    """Turn command line arguments into Options; raise ValueError when invalid."""
    namespace, extra = _build_parser().parse_known_args(list(argv))
    unknown = [arg for arg in extra if arg.startswith("-") and arg != "-"]
    if unknown:
        raise _UsageError(f"unrecognized arguments: {' '.join(unknown)}")

    options = Options()
    settings = options.settings
    if namespace.username is not None:
        settings.username = namespace.username
    if namespace.password is not None:
        settings.password = namespace.password
    if namespace.iface is not None:
        settings.device = namespace.iface[:16]
    if namespace.hostname is not None:
        settings.hostname = namespace.hostname[:32]
    if namespace.dns is not None:
        settings.dns = _address(namespace.dns, "DNS")
    if namespace.udp_server is not None:
        settings.udp_server = _address(namespace.udp_server, "UDP server IP")
    if namespace.cli_version is not None:
        settings.version = hex_to_bytes(namespace.cli_version, VERSION_SIZE)
    if namespace.hash is not None:
        settings.hash = namespace.hash
    settings.online_hook = namespace.online_hook
    settings.offline_hook = namespace.offline_hook
    if namespace.net_time is not None:
        options.net_time = parse_net_time(namespace.net_time)
    if namespace.debug is not None:
        if namespace.debug == "":
            options.log_level = LogLevel.DEBUG
        else:
            level = _atoi(namespace.debug)
            if LogLevel.NONE <= level <= LogLevel.TRACE:
                options.log_level = LogLevel(level)
            else:
                options.warnings.append("Invalid debug level!")
    options.logoff = namespace.logoff

    if not options.logoff and not (settings.username and settings.password):
        raise ValueError("Please specify username and password!")
    return options


def _install_signal_handlers(log: TraceLog) -> None:
    def handle(signum, frame):
        signal.signal(signal.SIGTERM, signal.SIG_DFL)
        signal.signal(signal.SIGINT, signal.SIG_DFL)
        log.write(LogType.ALL, LogLevel.INF, "Exiting...")
        raise _Terminated()

    signal.signal(signal.SIGTERM, handle)
    signal.signal(signal.SIGINT, handle)


def _prog_name() -> str:
    return os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "scutclient"


def main(argv: list[str] | None = None) -> int:
    """Run the client; returns the process exit status."""
    if argv is None:
        argv = sys.argv[1:]
    try:
        options = parse_args(argv)
    except _UsageError:
        print(_HELP.format(prog=_prog_name()), end="")
        return EXIT_USAGE
    except ValueError as exc:
        TraceLog().write(LogType.INIT, LogLevel.ERROR, str(exc))
        return EXIT_USAGE

    log = TraceLog(level=options.log_level)
    log.write(LogType.ALL, LogLevel.INF, "scutclient starting.")
    log.write(LogType.ALL, LogLevel.INF, "#######################################")
    for warning in options.warnings:
        log.write(LogType.INIT, LogLevel.ERROR, warning)

    settings = options.settings
    if not settings.hostname:
        settings.hostname = socket.gethostname()[:32]

    _install_signal_handlers(log)

    retry_time = 1
    try:
        while True:
            authenticator = Authenticator(settings, log)
            try:
                outcome = authenticator.run(options.logoff)
            except AuthError as exc:
                log.write(LogType.ALL, LogLevel.ERROR, str(exc))
                return 1
            finally:
                authenticator.close()

            if outcome is Outcome.RESTART:
                retry_time = 1
                log.write(LogType.ALL, LogLevel.INF, "Restart authentication.")
            elif outcome is Outcome.UNREACHABLE:
                log.write(LogType.ALL, LogLevel.INF, f"Retry in {retry_time} secs.")
                time.sleep(retry_time)
                if retry_time <= MAX_RETRY_DELAY:
                    retry_time *= 2
            elif (
                outcome is Outcome.TIME_NOT_ALLOWED or authenticator.time_not_allowed
            ) and options.net_time is not None:
                hour, minute = options.net_time
                wait = seconds_until(hour, minute, datetime.now())
                if wait is None:
                    break
                log.write(
                    LogType.ALL,
                    LogLevel.INF,
                    f"Waiting till {hour:02d}:{minute:02d}. Have a good sleep...",
                )
                if settings.offline_hook:
                    subprocess.run(settings.offline_hook, shell=True, check=False)
                time.sleep(max(0, wait))
            else:
                break
    except _Terminated:
        return 0

    log.write(LogType.ALL, LogLevel.ERROR, "Exit.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())