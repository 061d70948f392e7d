import pytest

from helpers import OID_A, OID_B, OID_C, OID_D, advertisement


@pytest.fixture
def feature_advertisement() -> bytes:
    return advertisement(
        (OID_A, 'HEAD'),
        (OID_B, 'refs/heads/feature'),
        (OID_A, 'refs/heads/master'),
        (OID_C, 'refs/tags/v1.0.0'),
        (OID_D, 'refs/tags/v1.0.0^{}'),
        (OID_C, 'refs/tags/v0.9.0'),
    )
