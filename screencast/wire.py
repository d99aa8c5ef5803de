"""Low-level wire helpers shared by the protocol sessions.

- protobuf-lite varint / length-delimited fields (Cast v2 framing)
- RTP fixed header (Miracast)
- tag-value XML extraction and SOAP envelopes (UPnP AVTransport)

The XML helpers deliberately mirror how renderers answer rather than being a
general XML parser: a single `<tag>...</tag>` lookup, no namespaces.
"""

import struct
from typing import Iterator, Optional, Sequence, Tuple, Union

WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_LENGTH_DELIMITED = 2
WIRE_FIXED32 = 5

RTP_VERSION_BYTE = 0x80  # V=2, P=0, X=0, CC=0
RTP_PAYLOAD_MP2T = 33

_RTP_HEADER = struct.Struct("!BBHII")

_SOAP_ENVELOPE = (
    '<?xml version="1.0" encoding="utf-8"?>\n'
    '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/" '
    's:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">\n'
    '<s:Body>\n'
    '<u:{action} xmlns:u="{service_type}">\n'
    '{arguments}'
    '</u:{action}>\n'
    '</s:Body>\n'
    '</s:Envelope>\n'
)


class WireFormatError(ValueError):
    """Raised when a buffer cannot be decoded."""
    pass


# --- Varints / protobuf-lite fields ---

def encode_varint(value: int) -> bytes:
    if value < 0:
        raise ValueError(f"varint must be non-negative, got {value}")
    out = bytearray()
    while value > 0x7F:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value & 0x7F)
    return bytes(out)


def decode_varint(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """Decode a varint at `offset`. Returns (value, offset after the varint)."""
    result = 0
    shift = 0
    pos = offset
    while True:
        if pos >= len(data):
            raise WireFormatError("truncated varint")
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not b & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise WireFormatError("varint too long")


def _tag(field_number: int, wire_type: int) -> bytes:
    return encode_varint((field_number << 3) | wire_type)


def encode_varint_field(field_number: int, value: int) -> bytes:
    return _tag(field_number, WIRE_VARINT) + encode_varint(value)


def encode_length_delimited_field(field_number: int, data: bytes) -> bytes:
    return _tag(field_number, WIRE_LENGTH_DELIMITED) + encode_varint(len(data)) + bytes(data)


def encode_string_field(field_number: int, value: str) -> bytes:
    return encode_length_delimited_field(field_number, value.encode("utf-8"))


def iter_fields(data: bytes) -> Iterator[Tuple[int, int, Union[int, bytes]]]:
    """Walk a protobuf-lite buffer yielding (field_number, wire_type, value).

    Varints yield ints, length-delimited fields yield the raw slice. Fixed
    width fields are skipped. Callers ignore field numbers they do not know.
    """
    pos = 0
    size = len(data)
    while pos < size:
        key, pos = decode_varint(data, pos)
        field_number = key >> 3
        wire_type = key & 0x07
        if wire_type == WIRE_VARINT:
            value, pos = decode_varint(data, pos)
            yield field_number, wire_type, value
        elif wire_type == WIRE_LENGTH_DELIMITED:
            length, pos = decode_varint(data, pos)
            end = pos + length
            if end > size:
                raise WireFormatError(
                    f"field {field_number} claims {length} bytes, {size - pos} left"
                )
            yield field_number, wire_type, bytes(data[pos:end])
            pos = end
        elif wire_type == WIRE_FIXED64:
            pos += 8
        elif wire_type == WIRE_FIXED32:
            pos += 4
        else:
            raise WireFormatError(f"unsupported wire type {wire_type}")
        if pos > size:
            raise WireFormatError("truncated fixed-width field")


# --- RTP ---

def build_rtp_header(seq: int, timestamp: int, ssrc: int, marker: bool,
                     payload_type: int = RTP_PAYLOAD_MP2T) -> bytes:
    second = (0x80 if marker else 0x00) | (payload_type & 0x7F)
    return _RTP_HEADER.pack(
        RTP_VERSION_BYTE,
        second,
        seq & 0xFFFF,
        timestamp & 0xFFFFFFFF,
        ssrc & 0xFFFFFFFF,
    )


# --- XML / SOAP ---

def xml_escape(text: str) -> str:
    return (
        str(text)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def extract_xml_value(xml: str, tag: str) -> Optional[str]:
    """Return the text of the first <tag>...</tag>, or None."""
    if not xml:
        return None
    start_tag = f"<{tag}>"
    end_tag = f"</{tag}>"
    start = xml.find(start_tag)
    if start == -1:
        return None
    value_start = start + len(start_tag)
    end = xml.find(end_tag, value_start)
    if end == -1:
        return None
    return xml[value_start:end].strip()


def build_soap_envelope(action: str, service_type: str,
                        arguments: Sequence[Tuple[str, str]] = ()) -> str:
    """Fixed SOAP 1.1 envelope; argument values are XML-escaped."""
    args = "".join(f"<{name}>{xml_escape(value)}</{name}>\n" for name, value in arguments)
    return _SOAP_ENVELOPE.format(action=action, service_type=service_type, arguments=args)
