from twisted.internet.address import IPv4Address
from twisted.internet.testing import StringTransport
from twisted.python.failure import Failure


class HalfCloseTransport(StringTransport):
    """StringTransport that records half-close and abort requests."""
    write_closed = False
    aborted = False

    def loseWriteConnection(self):
        self.write_closed = True

    def abortConnection(self):
        self.aborted = True
        self.disconnecting = True


def result_of(d):
    """Return the result of an already-fired Deferred, raising its failure."""
    results = []
    d.addBoth(results.append)
    assert results, "Deferred has not fired"
    if isinstance(results[0], Failure):
        results[0].raiseException()
    return results[0]


def connect_client(factory, host="10.0.0.5", port=40000):
    address = IPv4Address("TCP", host, port)
    proto = factory.buildProtocol(address)
    transport = HalfCloseTransport(peerAddress=address)
    proto.makeConnection(transport)
    return proto, transport


def connect_target(reactor, index=-1):
    host, port, factory, _timeout, _bind = reactor.tcpClients[index]
    proto = factory.buildProtocol(IPv4Address("TCP", host, port))
    transport = HalfCloseTransport()
    proto.makeConnection(transport)
    return proto, transport
