"""SimHash fingerprints and band bucketing for near-duplicate candidate search."""

import hashlib
from typing import Iterable, List

from .text import content_tokens, stem

BAND_BITS = 16


def simhash(tokens: Iterable[str], bits: int = 64) -> int:
    """
    Compute SimHash of a token sequence.

    Args:
        tokens: Input tokens
        bits: Number of bits in hash (default 64)

    Returns:
        SimHash as an integer (0 for empty input)
    """
    v = [0] * bits
    seen = False

    for token in tokens:
        seen = True
        token_hash = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16)
        for i in range(bits):
            if (token_hash >> i) & 1:
                v[i] += 1
            else:
                v[i] -= 1

    if not seen:
        return 0

    result = 0
    for i in range(bits):
        if v[i] > 0:
            result |= (1 << i)
    return result


def label_simhash(label: str, bits: int = 64) -> int:
    """SimHash over the stemmed content tokens of a label."""
    return simhash((stem(t) for t in content_tokens(label)), bits)


def hamming_distance(a: int, b: int) -> int:
    """Number of differing bits between two fingerprints."""
    return bin(a ^ b).count("1")


def band_keys(fingerprint: int, bits: int = 64, band_bits: int = BAND_BITS) -> List[str]:
    """
    Split a fingerprint into bands; labels sharing any band become candidates.

    Args:
        fingerprint: SimHash value
        bits: Width of the fingerprint
        band_bits: Width of each band

    Returns:
        One ``"<band index>:<band value>"`` key per band
    """
    mask = (1 << band_bits) - 1
    return [
        f"{i}:{(fingerprint >> (i * band_bits)) & mask:04x}"
        for i in range(bits // band_bits)
    ]
