"""7-bit variable-length integers and length-prefixed UTF-8 strings.

Each byte carries 7 data bits (least significant group first); the top
bit says another byte follows. Strings are a varint byte length
followed by that many UTF-8 bytes.
"""

from __future__ import annotations

from .errors import FormatError

MAX_VARINT_BYTES = 5


def read_var_uint(data: bytes, cursor: int) -> tuple[int, int]:
    """Read a 7-bit encoded unsigned integer.

    Args:
        data: Source buffer.
        cursor: Offset of the first varint byte.

    Returns:
        tuple: (value, new cursor).

    Raises:
        FormatError: If the buffer ends mid-sequence or no terminating
            byte appears within five bytes.
    """
    value = 0
    shift = 0
    for _ in range(MAX_VARINT_BYTES):
        if cursor >= len(data):
            raise FormatError("Unexpected end of data while reading a string length.")
        byte = data[cursor]
        cursor += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, cursor
        shift += 7
    raise FormatError("Invalid 7-bit encoded integer: no terminating byte within 5 bytes.")


def write_var_uint(value: int, out: bytearray) -> None:
    """Append the minimal 7-bit encoding of ``value`` to ``out``."""
    if value < 0:
        raise ValueError(f"Cannot encode negative value as varint: {value}")
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return


def read_length_prefixed_utf8(data: bytes, cursor: int) -> tuple[str, int]:
    """Read a varint-prefixed UTF-8 string.

    Returns:
        tuple: (decoded string, new cursor).

    Raises:
        FormatError: On truncation or invalid UTF-8.
    """
    length, cursor = read_var_uint(data, cursor)
    end = cursor + length
    if end > len(data):
        raise FormatError("Unexpected end of data while reading a string.")
    try:
        text = bytes(data[cursor:end]).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FormatError(f"String is not valid UTF-8: {exc}") from exc
    return text, end


def write_length_prefixed_utf8(value: str, out: bytearray) -> None:
    """Append ``value`` as a varint byte length plus UTF-8 bytes."""
    raw = value.encode("utf-8")
    write_var_uint(len(raw), out)
    out.extend(raw)
