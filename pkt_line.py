from dataclasses import dataclass
from enum import Enum
import string
from typing import Optional, Sequence, Union

LARGE_PACKET_MAX = 65520
MAX_PKT_LINE_PAYLOAD = LARGE_PACKET_MAX - 4
OBJECT_ID_LENGTH = 40

HEAD = b'HEAD'
MASTER = b'refs/heads/master'
SYMREF_MASTER = b'symref=HEAD:refs/heads/master'

_HEX_DIGITS = frozenset(string.hexdigits.encode())


class PktLineError(Exception):
    pass


class RefNotFound(Exception):
    def __init__(self, ref_type: str, ref_name: str) -> None:
        super().__init__(f"reference not found: {ref_type} {ref_name}")
        self.ref_type = ref_type
        self.ref_name = ref_name


class InvalidRefType(ValueError):
    pass


class PktLineConstants(Enum):
    FLUSH = 0
    DELIMITER = 1
    RESPONSE_END = 2
    INVALID = 3


@dataclass(frozen=True)
class ControlFrame:
    start: int
    end: int
    constant: PktLineConstants


@dataclass(frozen=True)
class CommentFrame:
    start: int
    end: int
    data: bytes


@dataclass(frozen=True)
class RefRecord:
    start: int
    end: int
    object_id: bytes
    name: bytes
    capabilities: Optional[bytes] = None


@dataclass(frozen=True)
class DataFrame:
    start: int
    end: int
    data: bytes


PktLine = Union[ControlFrame, CommentFrame, RefRecord, DataFrame]


def encode_pkt_line(line: bytes) -> bytes:
    if len(line) > MAX_PKT_LINE_PAYLOAD:
        raise PktLineError(f"pkt-line payload too long: {len(line)} bytes")
    return b'%04x%b' % (len(line) + 4, line)


def _is_object_id(value: bytes) -> bool:
    return len(value) == OBJECT_ID_LENGTH and all(c in _HEX_DIGITS for c in value)


def _parse_payload(start: int, end: int, payload: bytes) -> PktLine:
    if payload.startswith(b'#'):
        return CommentFrame(start, end, payload)
    if payload[OBJECT_ID_LENGTH:OBJECT_ID_LENGTH + 1] != b' ' or not _is_object_id(payload[:OBJECT_ID_LENGTH]):
        return DataFrame(start, end, payload)

    rest = payload[OBJECT_ID_LENGTH + 1:]
    capabilities = None
    nul = rest.find(b'\0')
    if nul >= 0:
        capabilities = rest[nul + 1:]
        if capabilities.endswith(b'\n'):
            capabilities = capabilities[:-1]
        name = rest[:nul]
    else:
        name = rest
    newline = name.find(b'\n')
    if newline >= 0:
        name = name[:newline]
    return RefRecord(start, end, payload[:OBJECT_ID_LENGTH], name, capabilities)


def parse_pkt_lines(data: bytes) -> tuple[list[PktLine], bytes]:
    pkts: list[PktLine] = []
    offset = 0
    size = len(data)
    while True:
        if size - offset < 4:
            return pkts, data[offset:]
        pkt_length_prefix = data[offset:(offset + 4)]
        if not all(c in _HEX_DIGITS for c in pkt_length_prefix):
            raise PktLineError(f"parse line size: {pkt_length_prefix!r} at offset {offset}")
        pkt_length = int(pkt_length_prefix, 16)
        if pkt_length < 4:
            pkts.append(ControlFrame(offset, offset + 4, PktLineConstants(pkt_length)))
            offset += 4
        else:
            if size - offset < pkt_length:
                return pkts, data[offset:]
            end = offset + pkt_length
            pkts.append(_parse_payload(offset, end, data[offset + 4:end]))
            offset = end


def _find_record(records: Sequence[RefRecord], name: bytes) -> Optional[RefRecord]:
    for record in records:
        if record.name == name:
            return record
    return None


def find_target(records: Sequence[RefRecord], ref_type: str, ref_name: str) -> Optional[RefRecord]:
    """Return the record whose object id HEAD should point at for the pin.

    Annotated tags are advertised twice, the tag object itself and the
    commit it peels to (``^{}``); the peeled commit wins.
    """
    if ref_type == 'branch':
        return _find_record(records, b'refs/heads/' + ref_name.encode())
    if ref_type == 'tag':
        ref = b'refs/tags/' + ref_name.encode()
        return _find_record(records, ref + b'^{}') or _find_record(records, ref)
    raise InvalidRefType(f"invalid reference type: {ref_type!r}")


def head_line(object_id: bytes, ref_type: str, capabilities: Optional[bytes]) -> bytes:
    if capabilities:
        capabilities = capabilities.replace(b'symref=', b'oldref=')
    if ref_type == 'branch':
        # symref always names master so that a later pin change and
        # "go get -u" keep working against the same advertised branch.
        caps = SYMREF_MASTER
        if capabilities:
            caps += b' ' + capabilities
        return object_id + b' ' + HEAD + b'\0' + caps + b'\n'
    if capabilities:
        return object_id + b' ' + HEAD + b'\0' + capabilities + b'\n'
    return object_id + b' ' + HEAD + b'\n'


def _copy_without(data: bytes, start: int, end: int, excised: Optional[RefRecord]) -> bytes:
    if excised is None or excised.end <= start or excised.start >= end:
        return data[start:end]
    return data[start:excised.start] + data[excised.end:end]


def rewrite_info_refs(data: bytes, ref_type: str, ref_name: str) -> bytes:
    """Rewrite a v0 upload-pack ref advertisement so HEAD points at a pinned ref.

    The returned stream keeps every byte of the original advertisement except
    the HEAD and refs/heads/master frames. HEAD is replaced by a frame
    carrying the pinned object id, immediately followed by a
    refs/heads/master frame with the same object id.
    """
    if ref_type not in ('branch', 'tag'):
        raise InvalidRefType(f"invalid reference type: {ref_type!r}")

    pkts, remainder = parse_pkt_lines(data)
    if len(remainder) > 0:
        raise PktLineError(f"incomplete data: {len(remainder)} trailing bytes")

    records = [pkt for pkt in pkts if isinstance(pkt, RefRecord)]
    head = _find_record(records, HEAD)
    master = _find_record(records, MASTER)
    target = find_target(records, ref_type, ref_name)
    if head is None or target is None:
        raise RefNotFound(ref_type, ref_name)

    return b''.join((
        _copy_without(data, 0, head.start, master),
        encode_pkt_line(head_line(target.object_id, ref_type, head.capabilities)),
        encode_pkt_line(target.object_id + b' ' + MASTER + b'\n'),
        _copy_without(data, head.end, len(data), master),
    ))
