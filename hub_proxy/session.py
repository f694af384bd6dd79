"""
One client <-> target connection pair.

The client-facing leg (:class:`ProxyServer`) and the target-facing leg
(:class:`ProxyClient`) are thin protocols that report every transport event
to a shared :class:`ProxySession`. The session relays bytes and applies the
teardown rules:

* end-of-stream on one leg half-closes the other (pending writes flushed);
* an error on one leg aborts the other;
* a clean close on one leg closes the other unless it was already aborted;
* a failed dial aborts the client.
"""
from enum import Enum
from typing import Dict, List, Optional

from twisted.internet import defer, error, protocol
from twisted.internet.interfaces import IHalfCloseableProtocol
from twisted.logger import Logger
from zope.interface import implementer

log = Logger()


class Direction(Enum):
    OPEN = "open"
    HALF_CLOSING = "half-closing"
    CLOSED = "closed"


UPSTREAM = "upstream"  # client -> target
DOWNSTREAM = "downstream"  # target -> client


@implementer(IHalfCloseableProtocol)
class Proxy(protocol.Protocol):
    session = None
    closed = False
    aborted = False
    read_ended = False
    write_ended = False

    def dataReceived(self, data):
        self.session.relay(self, data)

    def readConnectionLost(self):
        self.read_ended = True
        self.session.legEnded(self)

    def writeConnectionLost(self):
        self.write_ended = True
        self.session.legWriteClosed(self)

    def connectionLost(self, reason):
        self.closed = True
        self.session.legClosed(self, reason)

    def abort(self):
        if not (self.closed or self.aborted):
            self.aborted = True
            self.transport.abortConnection()

    def end(self):
        if not (self.closed or self.aborted):
            self.transport.loseWriteConnection()

    def close(self):
        if not (self.closed or self.aborted):
            self.transport.loseConnection()


class ProxyClient(Proxy):

    def connectionMade(self):
        self.session.targetConnected(self)


class ProxyClientFactory(protocol.ClientFactory):
    protocol = ProxyClient
    noisy = False

    def __init__(self, session):
        self.session = session

    def buildProtocol(self, addr):
        prot = protocol.ClientFactory.buildProtocol(self, addr)
        prot.session = self.session
        return prot

    def clientConnectionFailed(self, connector, reason):
        self.session.targetFailed(reason)


class ProxyServer(Proxy):
    """Client-facing leg; built by :class:`hub_proxy.port_forward.ProxyFactory`."""

    def connectionMade(self):
        # Nothing is read from the client until the target is connected.
        self.transport.pauseProducing()
        factory = self.factory
        self.session = ProxySession(self, factory.port, factory.host)
        factory.sessionStarted(self.session)
        self.session.connect(factory.getReactor(), factory.connect_timeout)


class ProxySession:

    def __init__(self, client: ProxyServer, port: int, target_host: str):
        self.client = client
        self.target: Optional[ProxyClient] = None
        self.connector = None
        self.port = port
        self.target_host = target_host
        address = client.transport.getPeer()
        self.peer = f"{address.host}:{address.port}"
        self.directions: Dict[str, Direction] = {
            UPSTREAM: Direction.OPEN,
            DOWNSTREAM: Direction.OPEN,
        }
        self.finished = False
        self._waiters: List[defer.Deferred] = []

    @property
    def target_address(self) -> str:
        return f"{self.target_host}:{self.port}"

    def whenClosed(self) -> defer.Deferred:
        """Deferred that fires once both legs of this session are closed."""
        if self.finished:
            return defer.succeed(self)
        d = defer.Deferred()
        self._waiters.append(d)
        return d

    def connect(self, reactor, timeout=30):
        log.info("[{port}] Incoming client connection from {peer}",
                 port=self.port, peer=self.peer)
        factory = ProxyClientFactory(self)
        self.connector = reactor.connectTCP(
            self.target_host, self.port, factory, timeout=timeout)

    # Leg bookkeeping

    def _peerOf(self, leg: Proxy) -> Optional[Proxy]:
        return self.target if leg is self.client else self.client

    def _directionFrom(self, leg: Proxy) -> str:
        return UPSTREAM if leg is self.client else DOWNSTREAM

    def _directionInto(self, leg: Proxy) -> str:
        return DOWNSTREAM if leg is self.client else UPSTREAM

    def _closeAll(self):
        for direction in self.directions:
            self.directions[direction] = Direction.CLOSED

    # Events from the target dial

    def targetConnected(self, target: ProxyClient):
        self.target = target
        self.connector = None
        if self.client.closed:
            log.info("[{port}] Local client {peer} left before target server "
                     "{target} connected.",
                     port=self.port, peer=self.peer, target=self.target_address)
            target.close()
            return
        log.info("[{port}] Connected to target server {target}",
                 port=self.port, target=self.target_address)
        # Flow control between the two transports.
        target.transport.registerProducer(self.client.transport, True)
        self.client.transport.registerProducer(target.transport, True)
        self.client.transport.resumeProducing()

    def targetFailed(self, reason):
        self.connector = None
        if self.client.closed:
            self._maybeFinish()
            return
        log.error("[{port}] Target server connection error: {error}",
                  port=self.port, error=reason.getErrorMessage())
        self._closeAll()
        self.client.abort()

    # Events from either leg

    def relay(self, source: Proxy, data: bytes):
        peer = self._peerOf(source)
        if (self.directions[self._directionFrom(source)] is not Direction.OPEN
                or peer is None or peer.closed or peer.aborted):
            log.debug("[{port}] Dropped {size} bytes after teardown",
                      port=self.port, size=len(data))
            return
        if source is self.client:
            log.info("[{port}] Data from local client ({size} bytes) -> target server",
                     port=self.port, size=len(data))
        else:
            log.info("[{port}] Data from target server ({size} bytes) -> local client",
                     port=self.port, size=len(data))
        peer.transport.write(data)

    def legEnded(self, source: Proxy):
        if source is self.client:
            log.info("[{port}] Local client {peer} disconnected. "
                     "Closing target server connection.",
                     port=self.port, peer=self.peer)
        else:
            log.info("[{port}] Target server disconnected. "
                     "Closing local client connection.",
                     port=self.port)
        direction = self._directionFrom(source)
        if self.directions[direction] is Direction.OPEN:
            self.directions[direction] = Direction.HALF_CLOSING
            peer = self._peerOf(source)
            if peer is not None:
                peer.end()
        self._closeIfShutDown(source)

    def legWriteClosed(self, leg: Proxy):
        direction = self._directionInto(leg)
        if self.directions[direction] is Direction.HALF_CLOSING:
            self.directions[direction] = Direction.CLOSED
        self._closeIfShutDown(leg)

    def _closeIfShutDown(self, leg: Proxy):
        # Half-closeable transports never close themselves once both
        # directions are shut down.
        if leg.read_ended and leg.write_ended:
            leg.close()

    def legClosed(self, source: Proxy, reason):
        failed = not reason.check(error.ConnectionDone)
        if failed and not source.aborted:
            if source is self.client:
                log.error("[{port}] Local client connection error from {peer}: {error}",
                          port=self.port, peer=self.peer,
                          error=reason.getErrorMessage())
            else:
                log.error("[{port}] Target server connection error: {error}",
                          port=self.port, error=reason.getErrorMessage())
        if source is self.client:
            log.info("[{port}] Local client {peer} connection closed.",
                     port=self.port, peer=self.peer)
        else:
            log.info("[{port}] Target server connection closed.", port=self.port)
        self._closeAll()

        if source is self.client and self.connector is not None:
            connector, self.connector = self.connector, None
            connector.stopConnecting()

        peer = self._peerOf(source)
        if peer is not None:
            if failed:
                peer.abort()
            else:
                peer.close()
        self._maybeFinish()

    def _maybeFinish(self):
        if self.finished or not self.client.closed:
            return
        if self.target is None:
            if self.connector is not None:
                return
        elif not self.target.closed:
            return
        self.finished = True
        log.debug("[{port}] Session for {peer} finished", port=self.port, peer=self.peer)
        waiters, self._waiters = self._waiters, []
        for d in waiters:
            d.callback(self)
