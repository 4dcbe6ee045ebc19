import datetime
import socket
import struct
import time


PACKET_SIZE = 48


def unix_to_ntp_time(timestamp):
    """Convert system time (Unix epoch) to NTP time."""
    return timestamp + NTP.NTP_DELTA


def seconds_to_fraction(micros):
    """Return the 32-bit NTP fraction for a number of microseconds."""
    frac = int(round((micros / 500000.0) * 2 ** 31))
    return min(max(frac, 0), 0xFFFFFFFF)


def fraction_to_micros(frac):
    """Return the microseconds encoded by a 32-bit NTP fraction."""
    return (frac / 2.0 ** 31) * 500000.0


def fixed_to_seconds(value):
    """Decode a 16.16 fixed-point value (root delay, root dispersion)."""
    return value / 65536.0


def ntp_timestamp_to_ms(seconds, frac):
    """Return an NTP (seconds, fraction) pair as milliseconds since 1900."""
    return seconds * 1000.0 + fraction_to_micros(frac) / 1000.0


def unix_to_ntp_ms(timestamp):
    """Return a Unix wall-clock sample as milliseconds since 1900."""
    return unix_to_ntp_time(timestamp) * 1000.0


class NTPException(Exception):
    """Exception raised by this module."""
    pass


class MalformedPacketError(NTPException):
    """Buffer is not a 48-byte NTP packet."""
    pass


class NTP:
    """Helper class defining constants."""

    _SYSTEM_EPOCH = datetime.date(*time.gmtime(0)[:3])  # 1970-01-01
    _NTP_EPOCH    = datetime.date(1900, 1, 1)
    NTP_DELTA = (_SYSTEM_EPOCH - _NTP_EPOCH).days * 24 * 3600

    MODE_TABLE = {
        0: "reserved",
        1: "symmetric active",
        2: "symmetric passive",
        3: "client",
        4: "server",
        5: "broadcast",
        6: "reserved for NTP control message",
        7: "reserved for private use",
    }

    LEAP_TABLE = {
        0: "no warning",
        1: "last minute has 61 seconds",
        2: "last minute has 59 seconds",
        3: "alarm condition (clock not synchronized)",
    }


def describe_leap_indicator(li):
    if li not in NTP.LEAP_TABLE:
        raise ValueError("leap indicator out of range: %r" % (li,))
    return NTP.LEAP_TABLE[li]


def describe_mode(mode):
    if mode not in NTP.MODE_TABLE:
        raise ValueError("mode out of range: %r" % (mode,))
    return NTP.MODE_TABLE[mode]


def describe_stratum(stratum):
    """Return the meaning of a stratum value (0-255)."""
    if not 0 <= stratum <= 255:
        raise ValueError("stratum out of range: %r" % (stratum,))
    if stratum == 0:
        return "kiss-o'-death message"
    if stratum == 1:
        return "primary reference"
    if stratum <= 15:
        return "secondary reference"
    if stratum == 16:
        return "clock not synchronized"
    return "reserved"


def describe_reference_identifier(ref_id, stratum):
    """Render the reference identifier.

    Stratum 0 and 1 carry a four character code (kiss code or clock
    source, e.g. "GPS", "RATE"). It is shown as text when printable,
    otherwise as hex. Any other stratum carries an IPv4 address.
    """
    raw = struct.pack("!I", ref_id & 0xFFFFFFFF)
    if stratum in (0, 1):
        code = raw.rstrip(b"\x00")
        if code and all(0x20 <= c < 0x7F for c in code):
            return code.decode("ascii")
        return raw.hex()
    return socket.inet_ntoa(raw)


class NTPPacket:
    """Represents an NTP packet.

    Timestamps are kept as (seconds, fraction) pairs exactly as they
    travel on the wire.
    """
    _PACKET_FORMAT = "!B B b b 11I"

    def __init__(self, version=4, mode=3, tx_timestamp=(0, 0)):
        self.leap = 0  # Leap indicator
        self.version = version  # NTP version
        self.mode = mode  # Mode (client/server)
        self.stratum = 0
        self.poll = 0
        self.precision = 0
        self.root_delay = 0  # 16.16 fixed point, raw
        self.root_dispersion = 0  # 16.16 fixed point, raw
        self.ref_id = 0
        self.ref_timestamp = (0, 0)
        self.orig_timestamp = (0, 0)
        self.recv_timestamp = (0, 0)
        self.tx_timestamp = tx_timestamp

    @property
    def root_delay_seconds(self):
        return fixed_to_seconds(self.root_delay)

    @property
    def root_dispersion_seconds(self):
        return fixed_to_seconds(self.root_dispersion)

    def to_data(self):
        """Convert this NTPPacket into a binary buffer."""
        try:
            packed = struct.pack(
                NTPPacket._PACKET_FORMAT,
                (self.leap << 6 | self.version << 3 | self.mode),
                self.stratum,
                self.poll,
                self.precision,
                self.root_delay,
                self.root_dispersion,
                self.ref_id,
                self.ref_timestamp[0],
                self.ref_timestamp[1],
                self.orig_timestamp[0],
                self.orig_timestamp[1],
                self.recv_timestamp[0],
                self.recv_timestamp[1],
                self.tx_timestamp[0],
                self.tx_timestamp[1],
            )
        except struct.error:
            raise NTPException("Invalid NTP packet fields.")
        return packed

    def from_data(self, data):
        """Populate this packet from a received binary buffer."""
        if len(data) != PACKET_SIZE:
            raise MalformedPacketError(
                "Invalid NTP packet: expected %d bytes, got %d" % (PACKET_SIZE, len(data)))
        try:
            unpacked = struct.unpack(NTPPacket._PACKET_FORMAT, data)
        except struct.error:
            raise MalformedPacketError("Invalid NTP packet: unpack error")

        self.leap = (unpacked[0] >> 6) & 0x3
        self.version = (unpacked[0] >> 3) & 0x7
        self.mode = unpacked[0] & 0x7
        self.stratum = unpacked[1]
        self.poll = unpacked[2]
        self.precision = unpacked[3]
        self.root_delay = unpacked[4]
        self.root_dispersion = unpacked[5]
        self.ref_id = unpacked[6]
        self.ref_timestamp = (unpacked[7], unpacked[8])
        self.orig_timestamp = (unpacked[9], unpacked[10])
        self.recv_timestamp = (unpacked[11], unpacked[12])
        self.tx_timestamp = (unpacked[13], unpacked[14])
        return self


def encode_request(now_seconds, now_micros):
    """Build a 48-byte client request (LI=0, VN=4, Mode=3).

    Only the transmit timestamp is set.
    """
    tx = (unix_to_ntp_time(int(now_seconds)) & 0xFFFFFFFF, seconds_to_fraction(now_micros))
    return NTPPacket(version=4, mode=3, tx_timestamp=tx).to_data()


def decode(data):
    """Decode a 48-byte buffer into an NTPPacket."""
    return NTPPacket().from_data(data)
