from dataclasses import dataclass
from typing import Tuple
from urllib.parse import urljoin

from twisted.logger import LogLevel

# Defaults
DEFAULT_HUB_URL = "https://secure.byond.com/"
DEFAULT_HUB_PORTS_PATH = "HubPorts"
DEFAULT_HUB_HOSTNAME = "hub.byond.com"
FALLBACK_HUB_IP = "69.39.237.88"
FALLBACK_HUB_PORTS = (6001, 20002)


@dataclass(frozen=True)
class ProxyConfig:
    hub_url: str = DEFAULT_HUB_URL
    hub_ports_path: str = DEFAULT_HUB_PORTS_PATH
    hub_hostname: str = DEFAULT_HUB_HOSTNAME
    fallback_ip: str = FALLBACK_HUB_IP
    fallback_ports: Tuple[int, ...] = FALLBACK_HUB_PORTS
    http_timeout: float = 10.0
    # same as reactor.connectTCP's own default
    connect_timeout: float = 30
    listen_interface: str = ""
    log_level: LogLevel = LogLevel.info

    @property
    def hub_ports_url(self) -> str:
        return urljoin(self.hub_url, self.hub_ports_path)


config = ProxyConfig()
