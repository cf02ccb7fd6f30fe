"""TLS ClientHello decoding.

Only what is needed to read the Server Name Indication is decoded. The walk
uses the fixed offsets of a ClientHello and assumes the whole message arrived
in the buffer it is given; a ClientHello split across reads yields no hostname.
"""

from __future__ import annotations

from dataclasses import dataclass, field

RECORD_TYPE_HANDSHAKE = 0x16
EXTENSION_SERVER_NAME = 0x0000

RECORD_HEADER_LEN = 5
# handshake type (1) + length (3) + client version (2) + random (32)
HANDSHAKE_HEADER_LEN = 38


class ClientHelloError(ValueError):
    pass


class NotHandshake(ClientHelloError):
    pass


class MalformedClientHello(ClientHelloError):
    pass


@dataclass(slots=True)
class Extension:
    type: int
    length: int
    payload: bytes


@dataclass(slots=True)
class ClientHello:
    record_type: int
    handshake_type: int
    session_id_length: int
    cipher_suites_length: int
    compression_methods_length: int
    extensions_length: int
    extensions: list[Extension] = field(default_factory=list)
    server_name_list_length: int = 0
    server_name_type: int = 0
    server_name_length: int = 0
    server_name: str | None = None


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def need(self, count: int, what: str) -> None:
        if self.pos + count > len(self.data):
            raise MalformedClientHello(f"truncated at {what} (offset {self.pos}, need {count})")

    def skip(self, count: int, what: str) -> None:
        self.need(count, what)
        self.pos += count

    def u8(self, what: str) -> int:
        self.need(1, what)
        value = self.data[self.pos]
        self.pos += 1
        return value

    def u16(self, what: str) -> int:
        self.need(2, what)
        value = int.from_bytes(self.data[self.pos : self.pos + 2], "big")
        self.pos += 2
        return value


def _parse_server_name(ext: Extension) -> tuple[int, int, int, str]:
    reader = _Reader(ext.payload)
    list_length = reader.u16("server name list length")
    name_type = reader.u8("server name type")
    name_length = reader.u16("server name length")
    reader.need(name_length, "server name")
    raw = ext.payload[reader.pos : reader.pos + name_length]
    try:
        hostname = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedClientHello(f"server name is not valid UTF-8: {exc}") from exc
    return list_length, name_type, name_length, hostname


def parse_client_hello(data: bytes) -> ClientHello:
    """Decode ``data`` up to and including the first server_name extension.

    Raises :class:`NotHandshake` when the record is not a TLS handshake and
    :class:`MalformedClientHello` when a length field points past the buffer
    or no server_name extension is present.
    """
    if not data or data[0] != RECORD_TYPE_HANDSHAKE:
        raise NotHandshake("first byte is not a TLS handshake record")

    reader = _Reader(bytes(data))
    reader.skip(RECORD_HEADER_LEN, "record header")
    handshake_type = data[reader.pos] if reader.pos < len(data) else 0
    reader.skip(HANDSHAKE_HEADER_LEN, "handshake header")

    session_id_length = reader.u8("session id length")
    reader.skip(session_id_length, "session id")

    cipher_suites_length = reader.u16("cipher suites length")
    reader.skip(cipher_suites_length, "cipher suites")

    compression_methods_length = reader.u8("compression methods length")
    reader.skip(compression_methods_length, "compression methods")

    extensions_length = reader.u16("extensions length")
    hello = ClientHello(
        record_type=data[0],
        handshake_type=handshake_type,
        session_id_length=session_id_length,
        cipher_suites_length=cipher_suites_length,
        compression_methods_length=compression_methods_length,
        extensions_length=extensions_length,
    )

    end = reader.pos + extensions_length
    while reader.pos + 4 <= end and reader.pos + 4 <= len(reader.data):
        ext_type = reader.u16("extension type")
        ext_length = reader.u16("extension length")
        if ext_type == EXTENSION_SERVER_NAME and reader.pos + ext_length <= len(reader.data):
            ext = Extension(ext_type, ext_length, reader.data[reader.pos : reader.pos + ext_length])
            hello.extensions.append(ext)
            (
                hello.server_name_list_length,
                hello.server_name_type,
                hello.server_name_length,
                hello.server_name,
            ) = _parse_server_name(ext)
            return hello
        hello.extensions.append(Extension(ext_type, ext_length, reader.data[reader.pos : reader.pos + ext_length]))
        reader.pos += ext_length

    raise MalformedClientHello("no server_name extension found")


def extract_sni(data: bytes) -> str | None:
    """Return the SNI hostname in ``data`` or None; never raises on bad input."""
    try:
        return parse_client_hello(data).server_name
    except ClientHelloError:
        return None
