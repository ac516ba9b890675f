import json
import logging
import os
import time
from dataclasses import replace
from typing import Callable, Iterable

from prometheus_client.core import GaugeMetricFamily, Metric
from prometheus_client.registry import Collector

from .netatmo import NetatmoClient, NotAuthenticatedError, Token

TokenFunc = Callable[[], Token]

log = logging.getLogger(__name__)

def load_token(file_name: str) -> Token:
    """Read a token file. Raises FileNotFoundError if it does not exist."""
    with open(file_name, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"{file_name}: token file does not contain a JSON object")
    return Token.from_json(raw)

def save_token(client: NetatmoClient, file_name: str) -> bool:
    """Persist the client's current token. Returns False if there was nothing to save."""
    try:
        token = client.current_token()
    except NotAuthenticatedError:
        return False

    log.info("Saving token to %s ...", file_name)
    data = json.dumps(token.to_json())
    fd = os.open(file_name, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(data)
    return True

def restore_token(client: NetatmoClient, file_name: str, now: float | None = None) -> bool:
    """
    Load the token file into the client. A missing file is not an error;
    any other problem propagates. Returns True when a token was restored.
    """
    try:
        token = load_token(file_name)
    except FileNotFoundError:
        return False

    if not token.refresh_token:
        log.warning("Restored token has no refresh-token! Exporter will need to be re-authenticated manually.")
    elif token.expiry is None:
        log.warning("Restored token has no expiry time! Token will be renewed immediately.")
        token = replace(token, expiry=(now if now is not None else time.time()) + 1.0)

    log.info("Loaded token from %s.", file_name)
    client.init_with_token(token)
    return True

class TokenCollector(Collector):
    """Exposes whether the exporter is authenticated and when its token expires."""
    def __init__(self, token_func: TokenFunc, clock: Callable[[], float] = time.time):
        self.token_func = token_func
        self.clock = clock

    def describe(self) -> Iterable[Metric]:
        yield GaugeMetricFamily("netatmo_token_authenticated", "Contains one if the exporter has a token.")
        yield GaugeMetricFamily("netatmo_token_valid", "Contains one if the token is currently valid.")
        yield GaugeMetricFamily("netatmo_token_expiry", "Contains the expiry time of the token.")

    def collect(self) -> Iterable[Metric]:
        authenticated = valid = expiry = 0.0
        try:
            token = self.token_func()
        except NotAuthenticatedError:
            token = None
        if token is not None:
            authenticated = 1.0
            valid = 1.0 if token.valid(self.clock()) else 0.0
            expiry = float(int(token.expiry)) if token.expiry is not None else 0.0

        yield GaugeMetricFamily("netatmo_token_authenticated", "Contains one if the exporter has a token.", value=authenticated)
        yield GaugeMetricFamily("netatmo_token_valid", "Contains one if the token is currently valid.", value=valid)
        yield GaugeMetricFamily("netatmo_token_expiry", "Contains the expiry time of the token.", value=expiry)
