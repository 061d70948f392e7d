"""Advertisement builders shared by the test modules."""

import typing as t

from pkt_line import RefRecord, encode_pkt_line, parse_pkt_lines

OID_A = 'a' * 40
OID_B = 'b' * 40
OID_C = 'c' * 40
OID_D = 'd' * 40

CAPABILITIES = 'multi_ack thin-pack side-band-64k ofs-delta agent=git/2.43.0'
SERVICE_ANNOUNCEMENT = encode_pkt_line(b'# service=git-upload-pack\n') + b'0000'


def advertisement(
    *refs: tuple[str, str],
    head_target: str = 'refs/heads/master',
    capabilities: str = CAPABILITIES,
    announce: bool = True,
) -> bytes:
    """Render `(object id, ref name)` pairs the way `git-http-backend` advertises them."""
    out = [SERVICE_ANNOUNCEMENT] if announce else []
    for idx, (objid, ref) in enumerate(refs):
        line = f'{objid} {ref}'
        if idx == 0:
            caps = [capabilities] if capabilities else []
            if head_target:
                caps.append(f'symref=HEAD:{head_target}')
            line += '\0' + ' '.join(caps)
        out.append(encode_pkt_line((line + '\n').encode()))
    out.append(b'0000')
    return b''.join(out)


def ref_records(data: bytes) -> t.List[RefRecord]:
    pkts, remainder = parse_pkt_lines(data)
    assert remainder == b''
    return [pkt for pkt in pkts if isinstance(pkt, RefRecord)]
