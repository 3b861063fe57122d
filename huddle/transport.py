"""Which listener carries realtime traffic, decided once per process.

colocated: websockets share the single public HTTP port and only the
configured client origin may open one.
isolated: websockets get a dedicated port that is not public by default, so
any origin is accepted; the HTTP port refuses upgrades.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from huddle.config import COLOCATED, ISOLATED, Settings
from huddle.errors import ConfigError

logger = logging.getLogger(__name__)

WEBSOCKET = 'websocket'


@dataclass(frozen=True)
class ListenerAddress:
    host: str
    port: int

    def __str__(self):
        return f'{self.host}:{self.port}'


@dataclass(frozen=True)
class TransportPlan:
    mode: str
    http_address: ListenerAddress
    listener_address: ListenerAddress
    allowed_origins: Optional[Tuple[str, ...]]  # None accepts any origin
    allowed_protocols: Tuple[str, ...] = (WEBSOCKET,)

    @property
    def shares_http(self) -> bool:
        return self.mode == COLOCATED

    def accepts_origin(self, origin: Optional[str]) -> bool:
        return self.allowed_origins is None or origin in self.allowed_origins

    def client_config(self, realtime_port: Optional[int] = None) -> dict:
        """What clients need to know to reach the realtime listener."""
        return {
            'mode': self.mode,
            'realtimePort': realtime_port or self.listener_address.port,
            'sharedWithHttp': self.shares_http,
            'transports': list(self.allowed_protocols),
        }


def select_transport(settings: Settings) -> TransportPlan:
    http = ListenerAddress(settings.host, settings.port)
    if settings.mode == COLOCATED:
        if not settings.client_origin:
            raise ConfigError('colocated mode needs CLIENT_ORIGIN')
        plan = TransportPlan(COLOCATED, http, http, (settings.client_origin,))
    elif settings.mode == ISOLATED:
        if settings.socket_port == settings.port and settings.port != 0:
            raise ConfigError('isolated mode needs SOCKET_PORT different from PORT')
        plan = TransportPlan(ISOLATED, http, ListenerAddress(settings.host, settings.socket_port), None)
    else:
        raise ConfigError(f'unknown deployment mode {settings.mode!r}')
    logger.info('transport: %s, realtime on %s', plan.mode, plan.listener_address)
    return plan
