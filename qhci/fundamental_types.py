# For forward declaration in type hints
from __future__ import annotations

from enum import Enum
from typing import Tuple, Dict, NamedTuple, List, NewType, Iterable

# Orbital index (0,1,2,...,n_orb-1)
# Spin-orbital index (0,1,...,2*n_orb-1); down-spin block is offset by n_orb
OrbitalIdx = NewType("OrbitalIdx", int)
# Symmetry label of an orbital, starts from 1
SymmetryLabel = NewType("SymmetryLabel", int)

# Two-electron integral, chemist notation :
# $(pq|rs) = \int \int \phi_p(r_1) \phi_q(r_1) \frac{1}{|r_1 - r_2|} \phi_r(r_2) \phi_s(r_2) dr_1 dr_2$
# Keyed by `compound_idx4(p, q, r, s)`
Two_electron_integral = Dict[int, float]

# One-electron integral :
# $<p|h|q> = \int \phi_p(r) (-\frac{1}{2} \Delta + V_en ) \phi_q(r) dr$
One_electron_integral = Dict[Tuple[OrbitalIdx, OrbitalIdx], float]

Energy = NewType("Energy", float)

#   _
#  |_  ._ ._ _  ._ _
#  |_ | | | (_) | _>
#


class UnsupportedSymmetryError(NotImplementedError):
    """The point group requires inversion handling, which is not implemented."""


class SolverNotConvergedError(RuntimeError):
    """Iterative linear solver exceeded its iteration cap (or broke down)."""

    def __init__(self, message, n_iter=None, residual=None):
        super().__init__(message)
        self.n_iter = n_iter
        self.residual = residual


#     _
#    |_) o _|_  _ _|_ ._ o ._   _
#    |_) |  |_ _>  |_ |  | | | (_|
#                               _|


class Half_determinant(int):
    """Occupation of a single spin channel, as an integer bitstring
    Occupation of OrbitalIdx = 0 is given by the rightmost bit.
    Instances are immutable: `set` and `unset` return new values.
    """

    @classmethod
    def from_orbs(cls, orbs: Iterable[OrbitalIdx]) -> Half_determinant:
        """
        >>> bin(Half_determinant.from_orbs((0, 2)))
        '0b101'
        >>> Half_determinant.from_orbs(())
        Half_determinant(())
        """
        bitstring = 0
        for orb in orbs:
            bitstring |= 1 << orb
        return cls(bitstring)

    def __repr__(self):
        return f"Half_determinant({self.get_occupied_orbs()!r})"

    def has(self, orb: OrbitalIdx) -> bool:
        """
        >>> Half_determinant.from_orbs((0, 2)).has(2), Half_determinant.from_orbs((0, 2)).has(1)
        (True, False)
        """
        return bool((self >> orb) & 1)

    def set(self, orb: OrbitalIdx) -> Half_determinant:
        """
        >>> Half_determinant.from_orbs((0,)).set(3)
        Half_determinant((0, 3))
        """
        return Half_determinant(int(self) | (1 << orb))

    def unset(self, orb: OrbitalIdx) -> Half_determinant:
        """
        >>> Half_determinant.from_orbs((0, 3)).unset(0)
        Half_determinant((3,))
        """
        return Half_determinant(int(self) & ~(1 << orb))

    def get_occupied_orbs(self) -> Tuple[OrbitalIdx, ...]:
        """Occupied orbitals in ascending order, derived from the bitstring on each call
        >>> Half_determinant(0b10110).get_occupied_orbs()
        (1, 2, 4)
        """
        bits = int(self)
        occ = []
        while bits:
            low = bits & -bits
            occ.append(low.bit_length() - 1)
            bits ^= low
        return tuple(occ)

    def diff(self, right: Half_determinant) -> Tuple[Tuple[OrbitalIdx, ...], Tuple[OrbitalIdx, ...]]:
        """Orbitals removed from self and added in `right`, both ascending
        >>> Half_determinant.from_orbs((0, 1, 4)).diff(Half_determinant.from_orbs((1, 2, 5)))
        ((0, 4), (2, 5))
        """
        removed = Half_determinant(int(self) & ~int(right))
        added = Half_determinant(int(right) & ~int(self))
        return removed.get_occupied_orbs(), added.get_occupied_orbs()

    def popcnt(self) -> int:
        """Number of occupied orbitals"""
        return bin(self).count("1")

    def n_below(self, orb: OrbitalIdx) -> int:
        """Number of occupied orbitals with an index strictly lower than `orb`
        >>> Half_determinant.from_orbs((0, 1, 4)).n_below(4)
        2
        """
        return bin(int(self) & ((1 << orb) - 1)).count("1")

    def n_between(self, i: OrbitalIdx, j: OrbitalIdx) -> int:
        """Number of occupied orbitals strictly between `i` and `j`
        >>> Half_determinant.from_orbs((0, 1, 4, 6, 8)).n_between(8, 1)
        2
        """
        lo, hi = min(i, j), max(i, j)
        mask = ((1 << hi) - 1) & ~((1 << (lo + 1)) - 1)
        return bin(int(self) & mask).count("1")


#   ______     _                      _                   _
#   |  _  \   | |                    (_)                 | |
#   | | | |___| |_ ___ _ __ _ __ ___  _ _ __   __ _ _ __ | |_
#   | | | / _ \ __/ _ \ '__| '_ ` _ \| | '_ \ / _` | '_ \| __|
#   | |/ /  __/ ||  __/ |  | | | | | | | | | | (_| | | | | |_
#   |___/ \___|\__\___|_|  |_| |_| |_|_|_| |_|\__,_|_| |_|\__|
#


class Determinant(NamedTuple):
    """Slater determinant: Product of 2 determinants.
    One for $\\alpha$ (up) electrons and one for $\\beta$ (dn) electrons.
    Tuple ordering (up first, then dn) is the canonical total order."""

    up: Half_determinant
    dn: Half_determinant

    @classmethod
    def from_orbs(cls, up: Iterable[OrbitalIdx], dn: Iterable[OrbitalIdx]) -> Determinant:
        """
        >>> Determinant.from_orbs((0, 1), (0,))
        Determinant(up=Half_determinant((0, 1)), dn=Half_determinant((0,)))
        """
        return cls(Half_determinant.from_orbs(up), Half_determinant.from_orbs(dn))

    def swap(self) -> Determinant:
        """Time-reversal partner: up and dn channels exchanged"""
        return Determinant(self.dn, self.up)

    def is_self_conjugate(self) -> bool:
        return self.up == self.dn

    def apply_single_excitation(self, h: OrbitalIdx, p: OrbitalIdx, spin: str) -> Determinant:
        """Return a new |Determinant|, with one electron moved from h to p
        >>> d = Determinant.from_orbs((0, 1), (0, 1))
        >>> d.apply_single_excitation(1, 2, "up") == Determinant.from_orbs((0, 2), (0, 1))
        True
        """
        if spin == "up":
            return Determinant(self.up.unset(h).set(p), self.dn)
        elif spin == "dn":
            return Determinant(self.up, self.dn.unset(h).set(p))
        else:
            raise NotImplementedError

    def apply_same_spin_double_excitation(
        self, h1: OrbitalIdx, p1: OrbitalIdx, h2: OrbitalIdx, p2: OrbitalIdx, spin: str
    ) -> Determinant:
        """
        >>> d = Determinant.from_orbs((0, 1), (0, 1))
        >>> d.apply_same_spin_double_excitation(0, 3, 1, 2, "dn") == Determinant.from_orbs((0, 1), (2, 3))
        True
        """
        return self.apply_single_excitation(h1, p1, spin).apply_single_excitation(h2, p2, spin)

    def apply_opposite_spin_double_excitation(
        self, h1: OrbitalIdx, p1: OrbitalIdx, h2: OrbitalIdx, p2: OrbitalIdx
    ) -> Determinant:
        """h1 -> p1 is the up excitation, h2 -> p2 the dn one"""
        return Determinant(self.up.unset(h1).set(p1), self.dn.unset(h2).set(p2))

    def exc_degree(self, right: Determinant) -> Tuple[int, int]:
        """Number of orbitals which differ, per spin channel

        >>> Determinant.from_orbs((0, 1), (0, 1)).exc_degree(Determinant.from_orbs((0, 2), (4, 6)))
        (1, 2)
        """
        ed_up = Half_determinant(self.up ^ right.up).popcnt() // 2
        ed_dn = Half_determinant(self.dn ^ right.dn).popcnt() // 2
        return ed_up, ed_dn


Psi_det = List[Determinant]
Psi_coef = List[float]

#   __
#  (_      ._ _  ._ _   _ _|_ ._
#  __) \/  | | | | | | (/_ |_ | \/
#      /                        /


class Point_group(Enum):
    NONE = "None"
    D2h = "D2h"
    Dooh = "Dooh"

    @staticmethod
    def from_str(str_: str) -> Point_group:
        """Case insensitive lookup, unknown names fall back to the trivial group
        >>> Point_group.from_str("d2h"), Point_group.from_str("DIH"), Point_group.from_str("c1")
        (<Point_group.D2h: 'D2h'>, <Point_group.Dooh: 'Dooh'>, <Point_group.NONE: 'None'>)
        """
        name = str_.lower()
        if name == "d2h":
            return Point_group.D2h
        elif name in ("dooh", "dih"):
            return Point_group.Dooh
        return Point_group.NONE


class Product_table(object):
    """Abelian product of two symmetry labels (labels start from 1)

    D2h labels are the irreps in Cotton order, for which the product of
    labels a and b is ((a - 1) xor (b - 1)) + 1.
    """

    def __init__(self, point_group: Point_group):
        self.point_group = point_group

    @property
    def n_syms(self) -> int:
        if self.point_group == Point_group.D2h:
            return 8
        elif self.point_group == Point_group.Dooh:
            raise UnsupportedSymmetryError("Dooh symmetry with inversion is not supported")
        return 1

    def normalize(self, label: int) -> SymmetryLabel:
        """The trivial group collapses every label to 1
        >>> Product_table(Point_group.NONE).normalize(5), Product_table(Point_group.D2h).normalize(5)
        (1, 5)
        """
        if self.point_group == Point_group.NONE:
            return SymmetryLabel(1)
        elif self.point_group == Point_group.Dooh:
            # Unbounded labels, checked when the queue is built
            return SymmetryLabel(label)
        if not 1 <= label <= self.n_syms:
            raise ValueError(f"Symmetry label {label} out of range for {self.point_group.value}")
        return SymmetryLabel(label)

    def get_product(self, a: SymmetryLabel, b: SymmetryLabel) -> SymmetryLabel:
        """
        >>> t = Product_table(Point_group.D2h)
        >>> t.get_product(2, 3), t.get_product(5, 5), t.get_product(1, 8)
        (4, 1, 8)
        >>> Product_table(Point_group.NONE).get_product(1, 1)
        1
        """
        if self.point_group == Point_group.D2h:
            return SymmetryLabel(((a - 1) ^ (b - 1)) + 1)
        elif self.point_group == Point_group.Dooh:
            raise UnsupportedSymmetryError("Dooh symmetry with inversion is not supported")
        return SymmetryLabel(1)
