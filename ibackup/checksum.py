"""Content fingerprints for verifying transfers."""

from __future__ import annotations

import base64
from hashlib import md5, sha256
from pathlib import Path
from typing import BinaryIO, Optional, Union

BLOCK_SIZE = 128 * 1024


def _new_hash(checksum_type: str):
    if checksum_type == "sha2":
        return sha256()
    if checksum_type == "md5":
        return md5()
    raise ValueError(f"Unknown checksum type '{checksum_type}', use 'sha2' or 'md5'.")


def _format(f_hash, checksum_type: str) -> str:
    if checksum_type == "md5":
        return f_hash.hexdigest()
    return f"sha2:{str(base64.b64encode(f_hash.digest()), encoding='utf-8')}"


def fingerprint(data: Union[bytes, BinaryIO], checksum_type: str = "sha2") -> str:
    """Compute the fingerprint of bytes or of a binary stream.

    Parameters
    ----------
    data:
        Content to compute the fingerprint of. Streams are read until exhausted.
    checksum_type:
        Either 'sha2' or 'md5'. These are the two checksum schemes an iRODS server
        can be configured with.

    Returns
    -------
        The base64 encoding of the sha256 sum prefixed by 'sha2:', or the
        hexadecimal md5 sum.

    Examples
    --------
    >>> fingerprint(b"hi")
    'sha2:j0NDRmSPa5bfid2pAcUXaxCm2Dlh3TwayItZstwyeqQ='

    """
    f_hash = _new_hash(checksum_type)
    if isinstance(data, (bytes, bytearray, memoryview)):
        f_hash.update(data)
    else:
        for block in iter(lambda: data.read(BLOCK_SIZE), b""):
            f_hash.update(block)
    return _format(f_hash, checksum_type)


def fingerprint_file(filepath: Union[str, Path], checksum_type: str = "sha2") -> str:
    """Compute the fingerprint of a local file."""
    f_hash = _new_hash(checksum_type)
    memv = memoryview(bytearray(BLOCK_SIZE))
    with open(filepath, "rb", buffering=0) as file:
        for item in iter(lambda: file.readinto(memv), 0):
            f_hash.update(memv[:item])
    return _format(f_hash, checksum_type)


def detect_checksum_type(checksum: str) -> str:
    """Determine which checksum scheme produced a fingerprint."""
    if checksum.startswith("sha2:"):
        return "sha2"
    return "md5"


def verify(filepath: Union[str, Path], remote_fingerprint: Optional[str]) -> bool:
    """Check whether a local file has the fingerprint recorded for the remote object.

    The scheme used for the local file follows the scheme of the remote fingerprint.
    A missing remote fingerprint never verifies.
    """
    if not remote_fingerprint:
        return False
    local_fp = fingerprint_file(filepath, detect_checksum_type(remote_fingerprint))
    return local_fp == remote_fingerprint
