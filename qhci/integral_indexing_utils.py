"""Canonical pairing functions used to key integrals and HCI queue buckets.

Two-electron integrals are stored in chemist notation $(pq|rs)$ and have the
8-fold permutational symmetry of real orbitals:
    (pq|rs) = (qp|rs) = (pq|sr) = (qp|sr) = (rs|pq) = (sr|pq) = (rs|qp) = (sr|qp)
so a single integer key is enough for each class of equivalent indices.
"""
from math import isqrt
from typing import Tuple, Set

from qhci.fundamental_types import OrbitalIdx


def compound_idx2(i: int, j: int) -> int:
    """Map an unordered pair to a single integer, symmetric in (i, j)
    >>> compound_idx2(0, 0), compound_idx2(0, 1), compound_idx2(1, 1), compound_idx2(0, 2)
    (0, 1, 2, 3)
    >>> compound_idx2(3, 5) == compound_idx2(5, 3)
    True
    """
    p, q = min(i, j), max(i, j)
    return (q * (q + 1)) // 2 + p


def compound_idx2_reverse(ij: int) -> Tuple[int, int]:
    """Inverse of |compound_idx2|, returns (i, j) with i <= j
    >>> compound_idx2_reverse(compound_idx2(7, 4))
    (4, 7)
    >>> compound_idx2_reverse(0)
    (0, 0)
    """
    j = (isqrt(8 * ij + 1) - 1) // 2
    i = ij - (j * (j + 1)) // 2
    return i, j


def compound_idx4(p: OrbitalIdx, q: OrbitalIdx, r: OrbitalIdx, s: OrbitalIdx) -> int:
    """Key of (pq|rs), identical for all 8 equivalent permutations
    >>> compound_idx4(0, 1, 2, 3) == compound_idx4(3, 2, 1, 0)
    True
    >>> compound_idx4(0, 1, 2, 3) == compound_idx4(0, 2, 1, 3)
    False
    """
    return compound_idx2(compound_idx2(p, q), compound_idx2(r, s))


def compound_idx4_reverse(pqrs: int) -> Tuple[OrbitalIdx, OrbitalIdx, OrbitalIdx, OrbitalIdx]:
    """Inverse of |compound_idx4|, returns (p, q, r, s) with p <= q, r <= s and pq <= rs
    >>> compound_idx4_reverse(compound_idx4(3, 2, 1, 0))
    (0, 1, 2, 3)
    """
    pq, rs = compound_idx2_reverse(pqrs)
    p, q = compound_idx2_reverse(pq)
    r, s = compound_idx2_reverse(rs)
    return p, q, r, s


def compound_idx4_reverse_all(pqrs: int) -> Set[Tuple[OrbitalIdx, OrbitalIdx, OrbitalIdx, OrbitalIdx]]:
    """All index quadruples sharing the key `pqrs`
    >>> sorted(compound_idx4_reverse_all(compound_idx4(0, 0, 1, 1)))
    [(0, 0, 1, 1), (1, 1, 0, 0)]
    >>> len(compound_idx4_reverse_all(compound_idx4(0, 1, 2, 3)))
    8
    """
    p, q, r, s = compound_idx4_reverse(pqrs)
    return {
        (p, q, r, s),
        (q, p, r, s),
        (p, q, s, r),
        (q, p, s, r),
        (r, s, p, q),
        (s, r, p, q),
        (r, s, q, p),
        (s, r, q, p),
    }


def canonical_idx4(
    p: OrbitalIdx, q: OrbitalIdx, r: OrbitalIdx, s: OrbitalIdx
) -> Tuple[OrbitalIdx, OrbitalIdx, OrbitalIdx, OrbitalIdx]:
    """Representative of the permutation class of (pq|rs)
    >>> canonical_idx4(3, 2, 1, 0)
    (0, 1, 2, 3)
    >>> canonical_idx4(1, 1, 0, 0)
    (0, 0, 1, 1)
    """
    pq = (min(p, q), max(p, q))
    rs = (min(r, s), max(r, s))
    if compound_idx2(*pq) <= compound_idx2(*rs):
        return pq + rs
    return rs + pq
