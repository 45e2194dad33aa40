"""
Where the connection settings come from: keyword arguments, CALSYNC_*
environment variables, and a JSON config file, in that order of priority.
"""

import json
import logging
import os

from calsync.lib.error import ConfigError
from calsync.models import CalDAVConfig

CONFIG_FILE_ENV = "CALSYNC_CONFIG_FILE"

## config key -> environment variable
ENV_VARS = {
    "server_url": "CALSYNC_SERVER_URL",
    "username": "CALSYNC_USERNAME",
    "password": "CALSYNC_PASSWORD",
    "selected_calendar_urls": "CALSYNC_SELECTED_CALENDAR_URLS",
    "sync_interval_minutes": "CALSYNC_SYNC_INTERVAL_MINUTES",
}

## camelCase keys as written by the web client are accepted in the file
FILE_KEYS = {
    "serverUrl": "server_url",
    "selectedCalendarUrls": "selected_calendar_urls",
    "syncIntervalMinutes": "sync_interval_minutes",
}


def default_config_file():
    return f"{os.environ.get('HOME', '/')}/.config/calsync/config.json"


def read_config(fn):
    """
    The JSON document in ``fn`` as a dict.  A missing file gives an empty
    dict, and so does a broken one (after logging the problem).
    """
    try:
        with open(fn, "rb") as config_file:
            cfg = json.load(config_file)
    except FileNotFoundError:
        logging.info(f"no config file found at {fn}")
        return {}
    except ValueError:
        logging.error(f"error in config file {fn}.  It will be ignored", exc_info=True)
        return {}
    if not isinstance(cfg, dict):
        logging.error(f"config file {fn} does not hold a JSON object.  It will be ignored")
        return {}
    return {FILE_KEYS.get(k, k): v for k, v in cfg.items()}


def _from_environment():
    ret = {}
    for key, var in ENV_VARS.items():
        value = os.environ.get(var)
        if value:
            ret[key] = value
    return ret


def get_config(config_file=None, environment=True, **config_data):
    """
    Builds a :class:`calsync.models.CalDAVConfig`.

    Keyword arguments win over the environment, and the environment wins
    over the config file (``config_file``, ``$CALSYNC_CONFIG_FILE`` or
    ``~/.config/calsync/config.json``).  Raises ConfigError if no server
    URL or username can be found anywhere.
    """
    if config_file is None and environment:
        config_file = os.environ.get(CONFIG_FILE_ENV)
    merged = read_config(config_file or default_config_file())
    if environment:
        merged.update(_from_environment())
    merged.update({k: v for k, v in config_data.items() if v is not None})

    missing = [k for k in ("server_url", "username") if not merged.get(k)]
    if missing:
        raise ConfigError("no %s configured" % " or ".join(missing))

    urls = merged.get("selected_calendar_urls") or []
    if isinstance(urls, str):
        urls = [u.strip() for u in urls.split(",") if u.strip()]

    try:
        interval = int(merged.get("sync_interval_minutes") or 60)
    except ValueError as err:
        raise ConfigError(f"sync interval is not a number: {err}") from err

    return CalDAVConfig(
        server_url=merged["server_url"],
        username=merged["username"],
        password=merged.get("password") or "",
        selected_calendar_urls=urls,
        sync_interval_minutes=interval,
    )
