"""
Pytest configuration and fixtures.
"""

import logging
import os
import select
import socket
import sys
import threading
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from ntp_packet import NTPPacket, decode, seconds_to_fraction, unix_to_ntp_time


def ntp_now():
    """Current time as an NTP (seconds, fraction) pair."""
    now = time.time()
    seconds = int(now)
    return unix_to_ntp_time(seconds), seconds_to_fraction(int((now - seconds) * 1000000))


def build_reply(request_data, stratum=2, ref_id=0xC0A80101):
    """Server-mode reply echoing the request's transmit timestamp."""
    request = decode(request_data)
    reply = NTPPacket(version=4, mode=4)
    reply.stratum = stratum
    reply.poll = 6
    reply.precision = -20
    reply.root_delay = 0x00010000 // 4  # 0.25 s
    reply.root_dispersion = 0x00008000  # 0.5 s
    reply.ref_id = ref_id
    recv = ntp_now()
    reply.ref_timestamp = (recv[0] - 5, recv[1])
    reply.orig_timestamp = request.tx_timestamp
    reply.recv_timestamp = recv
    reply.tx_timestamp = ntp_now()
    return reply.to_data()


class FakeSNTPServer(threading.Thread):
    """Loopback UDP server answering each request through `responder`.

    `responder(server, data, addr)` is called for every datagram and
    sends whatever it wants back.
    """

    def __init__(self, responder):
        super().__init__(daemon=True)
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.address = self.sock.getsockname()
        self.responder = responder
        self.requests = []
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.is_set():
            rlist, _, _ = select.select([self.sock], [], [], 0.1)
            if not rlist:
                continue
            data, addr = self.sock.recvfrom(1024)
            self.requests.append(data)
            self.responder(self, data, addr)

    def stop(self):
        self._stop_event.set()
        self.join(timeout=2)
        self.sock.close()


def reply_valid(server, data, addr):
    server.sock.sendto(build_reply(data), addr)


def reply_nothing(server, data, addr):
    pass


@pytest.fixture
def fake_server():
    """Start a FakeSNTPServer with the given responder; stopped on teardown."""
    servers = []

    def start(responder=reply_valid):
        server = FakeSNTPServer(responder)
        server.start()
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.stop()


@pytest.fixture
def stray_socket():
    """A second loopback socket on a different port than the server."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    yield sock
    sock.close()


@pytest.fixture(autouse=True)
def restore_root_logging():
    """main() reconfigures the root logger; put it back after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
