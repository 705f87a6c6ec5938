"""TCP tunnel: a writer that streams messages and a reader that replays them.

Every packet is a 12-byte big-endian header followed by its payload::

    | magic (2B) | version (1B) | type (1B) | crc32 (4B) | length (4B) | payload |

Messages travel on one connection. Acknowledgements are queried on a
second connection whose port is one above the message port.
"""

from __future__ import annotations

import enum
import logging
import socket
import struct
import threading
from dataclasses import dataclass
from typing import Callable, Sequence

from .message import MessageTag, Reply, TMessage, decode_message

_log = logging.getLogger(__name__)

MAGIC_NUMBER = 0xCAFE
CURRENT_VERSION = 0x01
HEADER_LEN = 12

TRANSFER_CHANNEL = 0
RECV_ACK_CHANNEL = 1

NETWORK_DEFAULT_TIMEOUT = 60.0
ACK_POLL_INTERVAL = 1.0
INITIAL_STAGE_CHECKING = False
SOCKET_BUFFER_SIZE = 16 * 1024 * 1024

_HEADER = struct.Struct(">HBBII")
_ACK = struct.Struct(">q")
_ACCEPT_POLL = 0.5
_BIND_ATTEMPTS = 64


class PacketType(enum.IntEnum):
    """Kinds of packets exchanged on the tunnel."""

    INCOMPLETE = 0x00
    GET_ACK = 0x01
    WRITE = 0x02
    RETURN_ACK = 0x03
    UNDEFINED = 0x04


class PacketError(ValueError):
    """Raised when a packet header is malformed or unexpected."""


@dataclass
class Packet:
    """One tunnel packet."""

    type_of: int
    payload: bytes = b""
    magic: int = MAGIC_NUMBER
    version: int = CURRENT_VERSION
    crc32: int = 0
    length: int | None = None

    def __post_init__(self) -> None:
        self.payload = bytes(self.payload)
        if self.length is None:
            self.length = len(self.payload)

    def encode(self) -> bytes:
        """Return the header and payload in wire form."""
        header = _HEADER.pack(self.magic, self.version, self.type_of, self.crc32, self.length)
        return header + self.payload

    def valid(self) -> bool:
        """Whether magic, version and type are ones this tunnel understands."""
        return (
            self.magic == MAGIC_NUMBER
            and self.version == CURRENT_VERSION
            and self.type_of < PacketType.UNDEFINED
        )

    def __str__(self) -> str:
        return (
            f"[magic:{self.magic}, ver:{self.version}, type:{self.type_of}, "
            f"crc:{self.crc32}, len:{self.length}]"
        )


def decode_header(buffer: bytes) -> Packet:
    """Decode a 12-byte packet header; the payload is left empty."""
    buffer = bytes(buffer)
    if len(buffer) != HEADER_LEN:
        raise PacketError("read packet header length is bad")
    magic, version, type_of, crc32, length = _HEADER.unpack(buffer)
    packet = Packet(
        type_of=type_of, magic=magic, version=version, crc32=crc32, length=length
    )
    if not packet.valid():
        raise PacketError(f"invalid packet header {packet}")
    return packet


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        chunk = sock.recv(remaining)
        if not chunk:
            raise ConnectionError("connection closed by peer")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _parse_address(address: str, default_host: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address!r} has no port")
    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"address {address!r} has a bad port") from None
    if not 0 <= port_number < 65535:
        raise ValueError(f"address {address!r} has a bad port")
    return host or default_host, port_number


class _Channel:
    """A lazily connected client socket."""

    def __init__(self, host: str, port: int, timeout: float | None) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.sock: socket.socket | None = None

    def ensure(self) -> socket.socket:
        if self.sock is None:
            sock = socket.create_connection(
                (self.host, self.port), timeout=NETWORK_DEFAULT_TIMEOUT
            )
            sock.settimeout(self.timeout)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, SOCKET_BUFFER_SIZE)
            self.sock = sock
        return self.sock

    def release(self) -> None:
        sock, self.sock = self.sock, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()


class TCPWriter:
    """Tunnel writer that sends messages to a :class:`TCPReader`.

    A background thread keeps ``ack`` up to date with the peer's value.
    """

    def __init__(self, remote_addr: str) -> None:
        self.remote_addr = remote_addr
        self.ack = 0
        self._channels: tuple[_Channel, _Channel] | None = None
        self._stop = threading.Event()
        self._poller: threading.Thread | None = None

    def prepare(self) -> bool:
        try:
            host, port = _parse_address(self.remote_addr, "127.0.0.1")
        except ValueError as exc:
            _log.critical("Resolve channel address error: %s", exc)
            return False
        self._channels = (
            _Channel(host, port, None),
            _Channel(host, port + 1, NETWORK_DEFAULT_TIMEOUT),
        )
        self._stop.clear()
        self._poller = threading.Thread(target=self._poll_ack, name="tcp-ack-poller", daemon=True)
        self._poller.start()

        if not INITIAL_STAGE_CHECKING:
            return True
        for channel in self._channels:
            try:
                channel.ensure()
            except OSError as exc:
                _log.critical("channel connect to %s:%d error %s", channel.host, channel.port, exc)
                return False
        return True

    def send(self, message: TMessage) -> int:
        """Send ``message``; return the latest ack or a negative reply."""
        if self._channels is None:
            raise RuntimeError("tcp writer is not prepared")
        channel = self._channels[TRANSFER_CHANNEL]
        try:
            sock = channel.ensure()
        except OSError as exc:
            _log.critical("channel connect to %s:%d error %s", channel.host, channel.port, exc)
            return Reply.NETWORK_OP_FAIL

        message.tag = int(message.tag | MessageTag.RESIDENT)
        packet = Packet(PacketType.WRITE, message.to_bytes())
        try:
            sock.sendall(packet.encode())
        except TimeoutError:
            _log.warning("Tcp writer send data packet timeout")
            return Reply.NETWORK_TIMEOUT
        except OSError:
            channel.release()
            return Reply.NETWORK_OP_FAIL
        return self.ack

    def ack_required(self) -> bool:
        return True

    def parsed_logs_required(self) -> bool:
        return False

    def close(self) -> None:
        """Stop polling acknowledgements and drop both connections."""
        self._stop.set()
        if self._channels is not None:
            for channel in self._channels:
                channel.release()
        if self._poller is not None:
            self._poller.join()
            self._poller = None

    def __enter__(self) -> "TCPWriter":
        if not self.prepare():
            raise OSError(f"cannot prepare tcp writer to {self.remote_addr}")
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _poll_ack(self) -> None:
        assert self._channels is not None
        channel = self._channels[RECV_ACK_CHANNEL]
        query = Packet(PacketType.GET_ACK).encode()
        while not self._stop.is_set():
            try:
                self._query_ack(channel, query)
            except (OSError, PacketError) as exc:
                if not self._stop.is_set():
                    _log.critical("tcp operation error and release, %s", exc)
                channel.release()
            self._stop.wait(ACK_POLL_INTERVAL)

    def _query_ack(self, channel: _Channel, query: bytes) -> None:
        sock = channel.ensure()
        sock.sendall(query)
        result = decode_header(_recv_exact(sock, HEADER_LEN))
        if result.type_of != PacketType.RETURN_ACK or not result.length:
            raise PacketError("acker receive bad type queryAck")
        payload = _recv_exact(sock, result.length)
        if len(payload) < _ACK.size:
            raise PacketError("acker receive bad payload queryAck")
        (self.ack,) = _ACK.unpack_from(payload)


def _listen(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen()
    except OSError:
        sock.close()
        raise
    return sock


class TCPReader:
    """Tunnel reader that receives messages from :class:`TCPWriter` peers.

    With port 0 in the listen address a free pair of adjacent ports is
    chosen; ``port`` then holds the message port.
    """

    def __init__(self, listen_address: str) -> None:
        self.listen_address = listen_address
        self.ack = 0
        self.port: int | None = None
        self.replayers: list = []
        self._listeners: list[socket.socket] = []
        self._connections: set[socket.socket] = set()
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._acceptors: list[threading.Thread] = []

    def link(self, replayers: Sequence) -> None:
        """Start listening and hand every received message to ``replayers``."""
        replayers = list(replayers)
        if not replayers:
            raise ValueError("at least one replayer is required")
        host, port = _parse_address(self.listen_address, "0.0.0.0")
        try:
            transfer, ack = self._bind(host, port)
        except OSError as exc:
            _log.critical("Tcp reader server listen %s error: %s", self.listen_address, exc)
            raise
        self.replayers = replayers
        self.port = transfer.getsockname()[1]
        self._listeners = [transfer, ack]
        self._closed.clear()
        self._acceptors = [
            threading.Thread(
                target=self._accept_loop,
                args=(transfer, self._recv_transfer, True),
                name="tcp-transfer-acceptor",
                daemon=True,
            ),
            threading.Thread(
                target=self._accept_loop,
                args=(ack, self._recv_get_ack, False),
                name="tcp-ack-acceptor",
                daemon=True,
            ),
        ]
        for thread in self._acceptors:
            thread.start()

    def close(self) -> None:
        """Stop listening and drop every open connection."""
        self._closed.set()
        for listener in self._listeners:
            listener.close()
        with self._lock:
            connections = list(self._connections)
        for conn in connections:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        for thread in self._acceptors:
            thread.join()
        self._acceptors = []
        self._listeners = []

    def __enter__(self) -> "TCPReader":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @staticmethod
    def _bind(host: str, port: int) -> tuple[socket.socket, socket.socket]:
        if port:
            transfer = _listen(host, port)
            try:
                return transfer, _listen(host, port + 1)
            except OSError:
                transfer.close()
                raise
        for _ in range(_BIND_ATTEMPTS):
            transfer = _listen(host, 0)
            chosen = transfer.getsockname()[1]
            if chosen < 65535:
                try:
                    return transfer, _listen(host, chosen + 1)
                except OSError:
                    pass
            transfer.close()
        raise OSError("no free pair of adjacent ports found")

    def _accept_loop(
        self,
        listener: socket.socket,
        handler: Callable[[socket.socket], None],
        transfer: bool,
    ) -> None:
        listener.settimeout(_ACCEPT_POLL)
        while not self._closed.is_set():
            try:
                conn, _ = listener.accept()
            except TimeoutError:
                continue
            except OSError as exc:
                if self._closed.is_set():
                    return
                _log.warning("Server accept channel error : %s", exc)
                continue
            conn.settimeout(None)
            conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 0 if transfer else 1)
            if transfer:
                conn.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, SOCKET_BUFFER_SIZE)
            with self._lock:
                self._connections.add(conn)
            threading.Thread(target=self._serve, args=(conn, handler), daemon=True).start()

    def _serve(self, conn: socket.socket, handler: Callable[[socket.socket], None]) -> None:
        try:
            with conn:
                handler(conn)
        except (OSError, ValueError) as exc:
            if not self._closed.is_set():
                _log.warning("Server connection closed: %s", exc)
        finally:
            with self._lock:
                self._connections.discard(conn)

    def _recv_transfer(self, conn: socket.socket) -> None:
        while True:
            packet = decode_header(_recv_exact(conn, HEADER_LEN))
            if packet.type_of != PacketType.WRITE or not packet.length:
                raise PacketError("transfer receive bad type packet")
            message = decode_message(_recv_exact(conn, packet.length))
            message.shard %= len(self.replayers)
            self.ack = self.replayers[message.shard].sync(message, None)

    def _recv_get_ack(self, conn: socket.socket) -> None:
        while True:
            packet = decode_header(_recv_exact(conn, HEADER_LEN))
            if packet.type_of != PacketType.GET_ACK or packet.length:
                raise PacketError("ack receive bad type packet")
            reply = Packet(PacketType.RETURN_ACK, _ACK.pack(int(self.ack)))
            try:
                conn.sendall(reply.encode())
            except TimeoutError:
                _log.warning("Tcp ack send ack back timeout")