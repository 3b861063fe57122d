"""Process-wide settings, read once from the environment at startup."""
import logging, os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

from huddle.errors import ConfigError

COLOCATED = 'colocated'
ISOLATED = 'isolated'
MODES = (COLOCATED, ISOLATED)


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw in (None, ''):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f'{name} must be an integer, got {raw!r}') from None
    if value < 0:
        raise ConfigError(f'{name} must not be negative')
    return value


@dataclass(frozen=True)
class Settings:
    mode: str = ISOLATED
    host: str = '0.0.0.0'
    port: int = 3001
    socket_port: int = 3002
    client_origin: Optional[str] = None
    chat_store_url: Optional[str] = None
    outbox_size: int = 256
    log_level: str = 'INFO'

    def __post_init__(self):
        if self.mode not in MODES:
            raise ConfigError(f'unknown deployment mode {self.mode!r}, expected one of {MODES}')
        if self.outbox_size < 1:
            raise ConfigError('outbox size must be at least 1')

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        env = os.environ if environ is None else environ
        # A hosted deployment only exposes one public port.
        default_mode = COLOCATED if env.get('RENDER_EXTERNAL_URL') else ISOLATED
        return cls(
            mode=(env.get('HUDDLE_MODE') or default_mode).strip().lower(),
            host=env.get('HOST') or '0.0.0.0',
            port=_int(env, 'PORT', 3001),
            socket_port=_int(env, 'SOCKET_PORT', 3002),
            client_origin=env.get('CLIENT_ORIGIN') or None,
            chat_store_url=env.get('CHAT_STORE_URL') or None,
            outbox_size=_int(env, 'OUTBOX_SIZE', 256),
            log_level=(env.get('LOG_LEVEL') or 'INFO').upper(),
        )

    def override(self, **changes) -> 'Settings':
        """Copy with the non-None values replaced (command line flags)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def configure_logging(level='INFO'):
    logging.basicConfig(level=level, format='[%(name)s] %(message)s')
