import errno

from twisted.internet import endpoints, protocol
from twisted.internet.error import CannotListenError
from twisted.logger import Logger

from hub_proxy.session import ProxyServer

log = Logger()


class ProxyFactory(protocol.Factory):
    """Builds one :class:`ProxyServer` per accepted client, all dialing ``host:port``."""
    protocol = ProxyServer
    noisy = False

    def __init__(self, host, port, reactor=None, connect_timeout=30):
        self.host = host
        self.port = port
        self.reactor = reactor
        self.connect_timeout = connect_timeout
        self.sessions = set()

    def getReactor(self):
        if self.reactor is None:
            from twisted.internet import reactor
            self.reactor = reactor
        return self.reactor

    def sessionStarted(self, session):
        self.sessions.add(session)
        session.whenClosed().addCallback(self.sessions.discard)


class ProxyListener:
    """
    Listens on one local port and forwards every connection to the same port
    number on ``target_ip``.
    """

    def __init__(self, reactor, port: int, target_ip: str,
                 interface: str = "", connect_timeout: float = 30):
        self.reactor = reactor
        self.port = port
        self.target_ip = target_ip
        self.interface = interface
        self.factory = ProxyFactory(target_ip, port, reactor, connect_timeout)
        self.listening_port = None

    def start(self):
        """
        Bind and start accepting.

        The returned Deferred fires with the listening port, or with ``None``
        once a bind failure has been logged. It never errbacks.
        """
        endpoint = endpoints.TCP4ServerEndpoint(
            self.reactor, self.port, interface=self.interface)
        d = endpoint.listen(self.factory)
        d.addCallbacks(self._listening, self._listenFailed)
        return d

    def _listening(self, listening_port):
        self.listening_port = listening_port
        log.info("TCP Proxy server listening on port {port}, forwarding to {target}:{port}",
                 port=self.port, target=self.target_ip)
        return listening_port

    def _listenFailed(self, failure):
        log.error("[{port}] Server error: {error}",
                  port=self.port, error=failure.getErrorMessage())
        if failure.check(CannotListenError):
            socket_error = failure.value.socketError
            if getattr(socket_error, "errno", None) == errno.EADDRINUSE:
                log.error("Error: Port {port} is already in use", port=self.port)
        return None
