"""One-shot SNTP probe: send a single request, print the decoded reply."""
import argparse
import logging
import select
import socket
import sys
import time
from dataclasses import dataclass

import ntp_packet
from ntp_packet import NTPException, PACKET_SIZE


NTP_PORT = 123
DEFAULT_TIMEOUT = 10
RECV_BUFSIZE = 68  # larger than a packet so oversized replies are noticed
POLL_INTERVAL = 1.0

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


class SNTPSocketError(NTPException):
    """Socket create/bind/send/receive failure."""
    pass


class ReceiveTimeout(NTPException):
    """No valid reply arrived within the timeout."""
    pass


class UsageError(Exception):
    pass


class ValidationError(Exception):
    pass


class ResolutionError(Exception):
    pass


@dataclass(frozen=True)
class ProbeConfig:
    """Validated inputs for one probe."""

    host: str
    port: int = NTP_PORT
    timeout: int = DEFAULT_TIMEOUT
    bind_sntp_port: bool = False
    local_port: int = NTP_PORT

    @property
    def server_address(self):
        return (self.host, self.port)


def open_socket(bind_sntp_port=False, local_port=NTP_PORT):
    """Create the UDP/IPv4 socket, optionally bound to the SNTP port."""
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    except OSError as e:
        raise SNTPSocketError("socket: %s" % e)
    if bind_sntp_port:
        try:
            sock.bind(("0.0.0.0", local_port))
        except OSError as e:
            sock.close()
            raise SNTPSocketError("bind to port %d: %s" % (local_port, e))
        logging.debug("Bound to %s", sock.getsockname())
    return sock


def send_request(sock, server_address, request):
    try:
        sent = sock.sendto(request, server_address)
    except OSError as e:
        raise SNTPSocketError("sendto %s:%d: %s" % (server_address[0], server_address[1], e))
    logging.debug("Sent %d byte request to %s:%d", sent, server_address[0], server_address[1])


def receive_once(sock, server_address, timeout):
    """Wait for one valid reply from server_address.

    Readability is polled in one second slices until `timeout` seconds
    have passed. Datagrams from any other address or port, and datagrams
    that are not exactly PACKET_SIZE bytes, are dropped and the wait
    goes on. Raises ReceiveTimeout when the budget runs out.
    """
    server_address = tuple(server_address)
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ReceiveTimeout("receive timeout")
        try:
            rlist, _, _ = select.select([sock], [], [], min(POLL_INTERVAL, remaining))
        except OSError as e:
            raise SNTPSocketError("select: %s" % e)
        if not rlist:
            continue
        try:
            data, addr = sock.recvfrom(RECV_BUFSIZE)
        except OSError as e:
            raise SNTPSocketError("recvfrom: %s" % e)
        if addr != server_address:
            logging.debug("Dropped %d bytes from unexpected peer %s:%d", len(data), addr[0], addr[1])
            continue
        if len(data) != PACKET_SIZE:
            logging.debug("Dropped %d byte datagram from %s:%d", len(data), addr[0], addr[1])
            continue
        logging.debug("Accepted reply from %s:%d", addr[0], addr[1])
        return data


def compute_rtt(t1, t2, t3, t4):
    """Round-trip delay (t4 - t1) - (t3 - t2); all values in milliseconds."""
    return (t4 - t1) - (t3 - t2)


class ProbeSession:
    """One request/response exchange.

    Owns the socket for the duration of a `with` block and records the
    local wall-clock samples taken at send and receive time.
    """

    def __init__(self, config):
        self.config = config
        self.server_address = config.server_address
        self.timeout = config.timeout
        self.sock = None
        self.send_time = None
        self.recv_time = None

    def __enter__(self):
        self.sock = open_socket(self.config.bind_sntp_port, self.config.local_port)
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.sock is not None:
            self.sock.close()
            self.sock = None
        return False

    def send(self):
        now = time.time()
        seconds = int(now)
        request = ntp_packet.encode_request(seconds, int((now - seconds) * 1000000))
        send_request(self.sock, self.server_address, request)
        self.send_time = now

    def receive(self):
        data = receive_once(self.sock, self.server_address, self.timeout)
        self.recv_time = time.time()
        return ntp_packet.decode(data)

    def rtt_ms(self, packet):
        return compute_rtt(
            ntp_packet.ntp_timestamp_to_ms(*packet.orig_timestamp),
            ntp_packet.ntp_timestamp_to_ms(*packet.recv_timestamp),
            ntp_packet.ntp_timestamp_to_ms(*packet.tx_timestamp),
            ntp_packet.unix_to_ntp_ms(self.recv_time),
        )


def run_probe(config):
    """Send one request and return (reply packet, rtt in ms)."""
    with ProbeSession(config) as session:
        session.send()
        packet = session.receive()
        return packet, session.rtt_ms(packet)


def format_timestamp(seconds, frac):
    """Render an NTP timestamp as seconds.nanoseconds."""
    return "%d.%09d" % (seconds, int(ntp_packet.fraction_to_micros(frac)) * 1000)


def format_report(packet, rtt_ms, server_address):
    lines = [
        "Server: %s:%d" % (server_address[0], server_address[1]),
        "LI: %d (%s)" % (packet.leap, ntp_packet.describe_leap_indicator(packet.leap)),
        "VN: %d" % packet.version,
        "Mode: %d (%s)" % (packet.mode, ntp_packet.describe_mode(packet.mode)),
        "Stratum: %d (%s)" % (packet.stratum, ntp_packet.describe_stratum(packet.stratum)),
        "Poll: %d" % packet.poll,
        "Precision: %d" % packet.precision,
        "Root-Delay: %f" % packet.root_delay_seconds,
        "Root-Dispersion: %f" % packet.root_dispersion_seconds,
        "Reference-Identifier: %s" % ntp_packet.describe_reference_identifier(
            packet.ref_id, packet.stratum),
        "Reference-Timestamp: %s" % format_timestamp(*packet.ref_timestamp),
        "Originate-Timestamp: %s" % format_timestamp(*packet.orig_timestamp),
        "Receive-Timestamp: %s" % format_timestamp(*packet.recv_timestamp),
        "Transmit-Timestamp: %s" % format_timestamp(*packet.tx_timestamp),
        "",
        "RTT: %.3f ms" % rtt_ms,
    ]
    return "\n".join(lines) + "\n"


class _ArgumentParser(argparse.ArgumentParser):

    def error(self, message):
        raise UsageError(message)


def build_parser():
    parser = _ArgumentParser(
        prog="sntp-probe",
        add_help=False,
        description="Send one SNTP request to a server and print the decoded reply.",
    )
    parser.add_argument("--host", help="server host name or IPv4 address (required)")
    parser.add_argument("-b", "--bind-sntp-port", action="store_true",
                        help="send from local port %d (usually needs privileges)" % NTP_PORT)
    parser.add_argument("--port", type=int, default=NTP_PORT,
                        help="server port, 1-65535 (default: %(default)s)")
    parser.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT,
                        help="seconds to wait for a reply, at least 1 (default: %(default)s)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="log debug messages to stderr")
    parser.add_argument("-h", "--help", action="store_true",
                        help="show this help message and exit")
    return parser


def resolve_host(host):
    """Return the IPv4 address for host."""
    try:
        return socket.gethostbyname(host)
    except (OSError, UnicodeError):
        raise ResolutionError("unknown host: %s" % host)


def build_config(args):
    if not 1 <= args.port <= 65535:
        raise ValidationError("port must be between 1 and 65535: %d" % args.port)
    if args.timeout < 1:
        raise ValidationError("timeout must be at least 1 second: %d" % args.timeout)
    return ProbeConfig(
        host=resolve_host(args.host),
        port=args.port,
        timeout=args.timeout,
        bind_sntp_port=args.bind_sntp_port,
    )


def configure_logging(verbose=False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )


def main(argv=None):
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
        if args.help:
            parser.print_help(sys.stderr)
            return 1
        if not args.host:
            raise UsageError("the following arguments are required: --host")
    except UsageError as e:
        parser.print_usage(sys.stderr)
        print("%s: error: %s" % (parser.prog, e), file=sys.stderr)
        return 1

    configure_logging(args.verbose)
    try:
        config = build_config(args)
    except (ValidationError, ResolutionError) as e:
        print(e, file=sys.stderr)
        return 1

    try:
        packet, rtt = run_probe(config)
    except ReceiveTimeout:
        # not a failure: the server simply did not answer
        print("receive timeout", file=sys.stderr)
        return 0
    except SNTPSocketError as e:
        logging.error("%s", e)
        return 1

    sys.stdout.write(format_report(packet, rtt, config.server_address))
    return 0


if __name__ == '__main__':
    sys.exit(main())
