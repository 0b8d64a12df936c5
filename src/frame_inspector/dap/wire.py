"""Content-Length framing of Debug Adapter Protocol messages over a socket."""

import json
import logging
import socket

logger = logging.getLogger(__name__)

HEADER_SEPARATOR = b"\r\n\r\n"
RECEIVE_CHUNK_SIZE = 4096


class ConnectionClosed(ConnectionError):
    """The peer closed the connection."""


def encode_message(message: dict) -> bytes:
    """
    Frame a DAP message for the wire.

    :param message: JSON-serializable request, response or event.
    :return: Header and body bytes.
    """
    body = json.dumps(message).encode()
    header = f"Content-Length: {len(body)}\r\n\r\n".encode()
    return header + body


def get_content_length(headers: str) -> int | None:
    """
    Retrieve the Content-Length value from the headers.

    :param headers: Request headers as a string.
    :return: Content-Length value or None if there is no header.
    """
    for header in headers.split("\r\n"):
        if header.lower().startswith("content-length:"):
            return int(header.split(":")[1].strip())
    return None


def extract_message(buffer: bytes) -> tuple[dict | None, bytes]:
    """
    Take one complete message off the front of a buffer.

    :param buffer: Bytes received so far.
    :return: The decoded message (or None if incomplete) and the rest.
    :raises ValueError: If the header has no Content-Length or the body is
        not valid JSON.
    """
    header_end = buffer.find(HEADER_SEPARATOR)
    if header_end == -1:
        return None, buffer

    headers = buffer[:header_end].decode(errors="replace")
    content_length = get_content_length(headers)
    if content_length is None:
        raise ValueError("Missing Content-Length header")

    body_start = header_end + len(HEADER_SEPARATOR)
    total_length = body_start + content_length
    if len(buffer) < total_length:
        return None, buffer

    body = buffer[body_start:total_length]
    return json.loads(body.decode()), buffer[total_length:]


class MessageStream:
    """Reads and writes framed DAP messages on a connected socket."""

    def __init__(self, sock: socket.socket):
        """
        Initialize the stream.

        :param sock: Connected socket; its timeout applies to every read.
        """
        self.sock = sock
        self.buffer = b""

    def send(self, message: dict) -> None:
        logger.debug("Sending: %s", message)
        self.sock.sendall(encode_message(message))

    def receive(self) -> dict:
        """
        Block until one complete message has arrived.

        :raises ConnectionClosed: If the peer closes the connection first.
        """
        while True:
            message, self.buffer = extract_message(self.buffer)
            if message is not None:
                logger.debug("Received: %s", message)
                return message
            chunk = self.sock.recv(RECEIVE_CHUNK_SIZE)
            if not chunk:
                raise ConnectionClosed("Connection closed by peer")
            self.buffer += chunk
