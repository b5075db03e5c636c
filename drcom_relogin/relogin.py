import argparse
import json
import logging
import math
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

import requests

from .logging_config import setup_logging

CONFIG_PATH = Path("./config.json")
LOG_DIR = Path("./logs")

CHECK_URL = "http://www.msftconnecttest.com/connecttest.txt"
CHECK_BODY = "Microsoft Connect Test"
CHECK_TIMEOUT = 1.0

LOGIN_URL = "http://192.168.110.100/drcom/login"
LOGIN_TIMEOUT = 3.0
LOGIN_HEADERS = {
    "User-Agent": "curl/7.88.1",
    "Accept": "*/*",
    "Connection": "close",
}
# The portal answers with either of these; the second one really has no closing paren.
LOGIN_SUCCESS_BODIES = ('"result":1', 'dr1003({"result":1}')

TICK_INTERVAL = 1.0

logger = logging.getLogger("drcom_relogin")


class ConfigError(Exception):
    """Unusable credential file; the process must not start polling."""


@dataclass(frozen=True)
class Credential:
    username: str = ""
    password: str = ""

    def is_complete(self) -> bool:
        return bool(self.username) and bool(self.password)


@dataclass
class RunContext:
    credential: Credential
    session: requests.Session = field(default_factory=requests.Session)
    interval: float = TICK_INTERVAL
    check_timeout: float = CHECK_TIMEOUT
    login_timeout: float = LOGIN_TIMEOUT


def describe(flag: bool, ok: str, failed: str) -> str:
    return ok if flag else failed


def mask_value(value: str, keep: int = 2) -> str:
    if not value:
        return ""
    if len(value) <= keep * 2:
        return "*" * len(value)
    return f"{value[:keep]}***{value[-keep:]}"


def load_credential(path: Union[str, Path] = CONFIG_PATH) -> Credential:
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return Credential()
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    except ValueError as exc:
        raise ConfigError(f"Cannot parse config file {path}: {exc}") from exc

    if data is None:
        return Credential()
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    values = {}
    for key in ("username", "password"):
        value = data.get(key, "")
        if value is None:
            value = ""
        if not isinstance(value, str):
            raise ConfigError(f"Config field {key!r} in {path} must be a string")
        values[key] = value
    return Credential(**values)


def save_credential(credential: Credential, path: Union[str, Path] = CONFIG_PATH) -> None:
    path = Path(path)
    data = {"username": credential.username, "password": credential.password}
    try:
        payload = json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Cannot serialize config: {exc}") from exc
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(payload, encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot write config file {path}: {exc}") from exc
    logger.info("Saved username and password to %s", path)


def check_connectivity(session: requests.Session, timeout: float = CHECK_TIMEOUT) -> bool:
    try:
        response = session.get(
            CHECK_URL,
            headers={"Cache-Control": "no-cache"},
            allow_redirects=False,
            timeout=timeout,
        )
        online = response.status_code == 200 and response.text == CHECK_BODY
    except requests.RequestException as exc:
        logger.warning("Network check failed: %s", exc)
        online = False

    logger.info("(Ctrl+C to quit) Network status: %s", describe(online, "OK", "Error"))
    return online


def build_login_params(username: str, password: str) -> List[Tuple[str, str]]:
    return [
        ("callback", "dr1003"),
        ("DDDDD", username),
        ("upass", password),
        ("0MKKey", "123456"),
        ("R1", "0"),
        ("R3", "0"),
        ("R6", "0"),
        ("para", "00"),
        ("v6ip", ""),
        ("v", "3196"),
    ]


def portal_login(
    session: requests.Session,
    username: str,
    password: str,
    timeout: float = LOGIN_TIMEOUT,
) -> bool:
    logger.debug("Sending portal login user=%s", mask_value(username))
    try:
        response = session.get(
            LOGIN_URL,
            params=build_login_params(username, password),
            headers=LOGIN_HEADERS,
            timeout=timeout,
        )
    except requests.RequestException as exc:
        logger.warning("Login request failed: %s", exc)
        success = False
    else:
        success = response.status_code == 200 and response.text in LOGIN_SUCCESS_BODIES
        if not success:
            logger.debug(
                "Login response status=%s body=%.200r", response.status_code, response.text
            )
    logger.info("Login %s", describe(success, "Success", "Failed"))
    return success


def tick(ctx: RunContext) -> bool:
    online = check_connectivity(ctx.session, ctx.check_timeout)
    if not online:
        logger.info("Network error, trying to log in...")
        portal_login(
            ctx.session,
            ctx.credential.username,
            ctx.credential.password,
            ctx.login_timeout,
        )
    return online


def run_forever(
    ctx: RunContext,
    max_ticks: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Run one tick per interval until interrupted (or after ``max_ticks`` ticks).

    A tick that overruns the interval is followed immediately by the next one;
    missed ticks are dropped rather than replayed.
    """
    count = 0
    next_due = time.monotonic() + ctx.interval
    while max_ticks is None or count < max_ticks:
        delay = next_due - time.monotonic()
        if delay > 0:
            sleep(delay)
        tick(ctx)
        count += 1
        now = time.monotonic()
        next_due += ctx.interval
        if next_due < now:
            next_due = now


def merge_credential(
    stored: Credential,
    username: Optional[str] = None,
    password: Optional[str] = None,
) -> Credential:
    return Credential(
        username=username or stored.username,
        password=password or stored.password,
    )


def positive_seconds(value: str) -> float:
    try:
        seconds = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}") from None
    if not math.isfinite(seconds) or seconds <= 0:
        raise argparse.ArgumentTypeError(
            f"must be a positive, finite number of seconds: {value!r}"
        )
    return seconds


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="drcom-relogin",
        description="Re-login to the Dr.COM campus portal whenever the network drops.",
    )
    parser.add_argument("-u", "--username", default="", help="username (overrides config file)")
    parser.add_argument("-p", "--password", default="", help="password (overrides config file)")
    parser.add_argument(
        "--save",
        action="store_true",
        help="save username and password to the config file",
    )
    parser.add_argument(
        "-c", "--config", type=Path, default=CONFIG_PATH, help="config file path"
    )
    parser.add_argument("--log-dir", type=Path, default=LOG_DIR, help="log directory")
    parser.add_argument("--log-level", default="INFO", help="logging level name")
    parser.add_argument(
        "--interval",
        type=positive_seconds,
        default=TICK_INTERVAL,
        help="seconds between network checks",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_dir, log_level=args.log_level)

    try:
        credential = merge_credential(
            load_credential(args.config), args.username, args.password
        )
        if args.save:
            save_credential(credential, args.config)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 2

    if not credential.is_complete():
        logger.error(
            "Missing username or password: pass -u <username> -p <password> "
            "(optionally --save to store them) and run again."
        )
        logger.error("%s", parser.format_usage().strip())
        return 2

    ctx = RunContext(
        credential=credential, session=requests.Session(), interval=args.interval
    )
    logger.info("Watching network as %s", mask_value(credential.username))
    try:
        run_forever(ctx)
    except KeyboardInterrupt:
        logger.info("Stopped")
    finally:
        ctx.session.close()
    return 0
