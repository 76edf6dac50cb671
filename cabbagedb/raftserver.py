"""Runs a Raft node: ticks it, exchanges messages with peers over TCP and
routes client requests in and responses out.

Peer messages travel as frames::

    0x07 0x03 | payload length (u32, big endian) | encoded message
"""

from __future__ import annotations

import enum
import logging
import queue
import socket
import struct
import threading
import uuid
from dataclasses import dataclass, field

from .messages import (
    ADDRESS_PREFIX,
    BROADCAST_PREFIX,
    CLIENT_ADDRESS,
    CLIENT_PREFIX,
    NODE_PREFIX,
    ClientRequest,
    ClientResponse,
    Message,
    Request,
    decode_message,
    encode_message,
    node_address,
    node_id_of,
)
from .node import new_node
from .raftlog import RaftLog

_log = logging.getLogger(__name__)

TICK_INTERVAL = 0.1
SEND_ATTEMPTS = 3
RETRY_DELAY = 1.0
CONNECT_TIMEOUT = 2.0
_POLL_INTERVAL = 0.1
_PEER_READ_TIMEOUT = 30.0
_JOIN_TIMEOUT = 5.0

_FRAME_PREFIX = bytes([ADDRESS_PREFIX, NODE_PREFIX])
_LENGTH = struct.Struct(">I")


class _Kind(enum.Enum):
    TICK = enum.auto()
    PEER = enum.auto()
    NODE = enum.auto()
    CLIENT = enum.auto()
    STOP = enum.auto()


@dataclass
class ClientCall:
    """A client request; its response is put on ``responses``."""

    request: Request
    responses: queue.Queue = field(default_factory=queue.Queue)


def _parse_address(address: str) -> tuple[str, int]:
    host, sep, port = str(address).rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid peer address {address!r}")
    return host, int(port)


def _send_frame(conn: socket.socket, payload: bytes) -> None:
    conn.sendall(_FRAME_PREFIX + _LENGTH.pack(len(payload)) + payload)


def _recv_exact(conn: socket.socket, size: int) -> bytes | None:
    """Read exactly ``size`` bytes, or return None if the stream ends first."""
    chunks = bytearray()
    while len(chunks) < size:
        chunk = conn.recv(size - len(chunks))
        if not chunk:
            return None
        chunks.extend(chunk)
    return bytes(chunks)


class RaftServer:
    """Owns a Raft node and the threads that feed it."""

    def __init__(self, node_id: int, peers, log: RaftLog, state):
        self.peers = {int(peer): str(address) for peer, address in dict(peers).items()}
        self._peer_addresses = {peer: _parse_address(address) for peer, address in self.peers.items()}
        self._inbox: queue.Queue = queue.Queue()
        self._stopping = threading.Event()
        self._threads: list[threading.Thread] = []
        self._peer_queues: dict[int, queue.Queue] = {}
        self.node = new_node(node_id, set(self.peers), log, state, self._from_node)

    def _from_node(self, message: Message) -> None:
        self._inbox.put((_Kind.NODE, message))

    def _spawn(self, target, *args) -> None:
        thread = threading.Thread(target=target, args=args, daemon=True)
        thread.start()
        self._threads.append(thread)

    def serve(self, listener: socket.socket, client_calls: queue.Queue) -> None:
        """Start serving peers on ``listener`` and client calls from ``client_calls``."""
        if self._threads:
            raise RuntimeError("server is already serving")
        for peer, address in self._peer_addresses.items():
            outgoing: queue.Queue = queue.Queue()
            self._peer_queues[peer] = outgoing
            self._spawn(self._send_peer, address, outgoing)
        self._spawn(self._receive, listener)
        self._spawn(self._forward_calls, client_calls)
        self._spawn(self._tick)
        self._spawn(self._event_loop)

    def stop(self) -> None:
        """Stop every thread of the server and the state machine driver."""
        self._stopping.set()
        self._inbox.put((_Kind.STOP, None))
        for outgoing in self._peer_queues.values():
            outgoing.put(None)
        self.node.info.state_tx(None)
        for thread in self._threads:
            thread.join(timeout=_JOIN_TIMEOUT)
        self._threads.clear()
        self._peer_queues.clear()

    # -- event loop --------------------------------------------------------

    def _event_loop(self) -> None:
        requests: dict[uuid.UUID, ClientCall] = {}
        while True:
            kind, payload = self._inbox.get()
            if kind is _Kind.STOP:
                return
            try:
                if kind is _Kind.TICK:
                    self.node = self.node.tick()
                elif kind is _Kind.PEER:
                    self.node = self.node.step(payload)
                elif kind is _Kind.NODE:
                    self._dispatch(payload, requests)
                elif kind is _Kind.CLIENT:
                    self._client_call(payload, requests)
            except Exception:
                _log.exception("error while handling %s event", kind.name)

    def _client_call(self, call: ClientCall, requests: dict) -> None:
        request_id = uuid.uuid4()
        message = Message(
            term=0,
            sender=CLIENT_ADDRESS,
            to=node_address(self.node.info.id),
            event=ClientRequest(request_id, call.request),
        )
        requests[request_id] = call
        self.node = self.node.step(message)

    def _dispatch(self, message: Message, requests: dict) -> None:
        to = bytes(message.to)
        if len(to) < 2 or to[0] != ADDRESS_PREFIX:
            return
        if to[1] in (NODE_PREFIX, BROADCAST_PREFIX):
            self._route(message, to)
        elif to[1] == CLIENT_PREFIX and isinstance(message.event, ClientResponse):
            call = requests.pop(message.event.id, None)
            if call is not None:
                call.responses.put(message.event.response)

    def _route(self, message: Message, to: bytes) -> None:
        if to[1] == BROADCAST_PREFIX:
            targets = list(self._peer_queues)
        else:
            targets = [node_id_of(to)]
        for peer in targets:
            outgoing = self._peer_queues.get(peer)
            if outgoing is None:
                _log.warning("no route to node %s", peer)
                continue
            outgoing.put(message)

    # -- worker threads ----------------------------------------------------

    def _tick(self) -> None:
        while not self._stopping.wait(TICK_INTERVAL):
            self._inbox.put((_Kind.TICK, None))

    def _forward_calls(self, client_calls: queue.Queue) -> None:
        while not self._stopping.is_set():
            try:
                call = client_calls.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if call is None:
                return
            self._inbox.put((_Kind.CLIENT, call))

    def _send_peer(self, address: tuple[str, int], outgoing: queue.Queue) -> None:
        for message in iter(outgoing.get, None):
            payload = encode_message(message)
            for _ in range(SEND_ATTEMPTS):
                if self._stopping.is_set():
                    return
                try:
                    with socket.create_connection(address, timeout=CONNECT_TIMEOUT) as conn:
                        _send_frame(conn, payload)
                    break
                except OSError:
                    self._stopping.wait(RETRY_DELAY)

    def _receive(self, listener: socket.socket) -> None:
        listener.settimeout(_POLL_INTERVAL)
        while not self._stopping.is_set():
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._stopping.is_set() or listener.fileno() == -1:
                    return
                _log.info("TcpReceive err: %s", exc)
                continue
            threading.Thread(target=self._handle_peer, args=(conn,), daemon=True).start()

    def _handle_peer(self, conn: socket.socket) -> None:
        with conn:
            conn.settimeout(_PEER_READ_TIMEOUT)
            try:
                while True:
                    prefix = _recv_exact(conn, len(_FRAME_PREFIX))
                    if prefix != _FRAME_PREFIX:
                        return
                    header = _recv_exact(conn, _LENGTH.size)
                    if header is None:
                        return
                    (length,) = _LENGTH.unpack(header)
                    data = _recv_exact(conn, length)
                    if data is None:
                        return
                    self._inbox.put((_Kind.PEER, decode_message(data)))
            except (OSError, ValueError) as exc:
                _log.info("dropping peer connection: %s", exc)