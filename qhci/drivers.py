# Yes, I like itertools
import math
from dataclasses import dataclass
from functools import cached_property
from itertools import chain, combinations, product
from typing import Dict, Iterator, List, NamedTuple, Optional, Tuple

import numpy as np

# Import mpi4py and utilities
from mpi4py import MPI  # Note this initializes and finalizes MPI session automatically

from qhci.fundamental_types import (
    Determinant,
    Energy,
    Half_determinant,
    OrbitalIdx,
    Point_group,
    Product_table,
    Psi_coef,
    Psi_det,
    SymmetryLabel,
    UnsupportedSymmetryError,
)
from qhci.integral_indexing_utils import compound_idx2
from qhci.io import Config, Integrals, Result, load_integrals
from qhci.parallel import Execution_context

SQRT2 = math.sqrt(2.0)
SQRT2_INV = 1.0 / SQRT2

#  ______ _
#  | ___ \ |
#  | |_/ / |__   __ _ ___  ___
#  |  __/| '_ \ / _` / __|/ _ \
#  | |   | | | | (_| \__ \  __/
#  \_|   |_| |_|\__,_|___/\___|
#


class PhaseIdx(object):
    """Fermionic phases of excitations between half determinants.

    Excitations are applied one electron at a time, holes and particles in
    ascending order. Moving an electron from h to p contributes
    (-1)^(number of occupied orbitals strictly between h and p).
    """

    @staticmethod
    def single_phase(sdet: Half_determinant, h: OrbitalIdx, p: OrbitalIdx) -> int:
        return -1 if sdet.n_between(h, p) % 2 else 1

    @staticmethod
    def single_exc_no_phase(
        sdet_i: Half_determinant, sdet_j: Half_determinant
    ) -> Tuple[OrbitalIdx, OrbitalIdx]:
        """hole, particle of <I|H|J> when I and J differ by exactly one orbital
           h is occupied only in I
           p is occupied only in J

        >>> PhaseIdx.single_exc_no_phase(Half_determinant.from_orbs((1, 5, 7)), Half_determinant.from_orbs((1, 7, 23)))
        (5, 23)
        """
        (h,), (p,) = sdet_i.diff(sdet_j)
        return h, p

    @staticmethod
    def single_exc(
        sdet_i: Half_determinant, sdet_j: Half_determinant
    ) -> Tuple[int, OrbitalIdx, OrbitalIdx]:
        """phase, hole, particle of <I|H|J> when I and J differ by exactly one orbital

        >>> PhaseIdx.single_exc(Half_determinant.from_orbs((0, 4, 6)), Half_determinant.from_orbs((0, 6, 22)))
        (-1, 4, 22)
        >>> PhaseIdx.single_exc(Half_determinant.from_orbs((0, 1, 8)), Half_determinant.from_orbs((0, 8, 17)))
        (-1, 1, 17)
        >>> PhaseIdx.single_exc(Half_determinant.from_orbs((0, 1)), Half_determinant.from_orbs((0, 2)))
        (1, 1, 2)
        """
        h, p = PhaseIdx.single_exc_no_phase(sdet_i, sdet_j)
        return PhaseIdx.single_phase(sdet_i, h, p), h, p

    @staticmethod
    def double_phase(sdet_i: Half_determinant, h1, h2, p1, p2) -> int:
        # h1 -> p1 first, then h2 -> p2 on the intermediate occupation
        phase = PhaseIdx.single_phase(sdet_i, h1, p1)
        return phase * PhaseIdx.single_phase(sdet_i.unset(h1).set(p1), h2, p2)

    @staticmethod
    def double_exc_no_phase(
        sdet_i: Half_determinant, sdet_j: Half_determinant
    ) -> Tuple[OrbitalIdx, OrbitalIdx, OrbitalIdx, OrbitalIdx]:
        """holes, particles of <I|H|J> when I and J differ by exactly two orbitals
           h1, h2 are occupied only in I
           p1, p2 are occupied only in J

        >>> PhaseIdx.double_exc_no_phase(Half_determinant.from_orbs((1, 2, 3, 4, 5, 6, 7, 8, 9)),
        ...                              Half_determinant.from_orbs((1, 2, 5, 6, 7, 8, 9, 12, 13)))
        (3, 4, 12, 13)
        """
        (h1, h2), (p1, p2) = sdet_i.diff(sdet_j)
        return h1, h2, p1, p2

    @staticmethod
    def double_exc(
        sdet_i: Half_determinant, sdet_j: Half_determinant
    ) -> Tuple[int, OrbitalIdx, OrbitalIdx, OrbitalIdx, OrbitalIdx]:
        """phase, holes, particles of <I|H|J> when I and J differ by exactly two orbitals

        >>> PhaseIdx.double_exc(Half_determinant.from_orbs(range(9)),
        ...                     Half_determinant.from_orbs((0, 1, 4, 5, 6, 7, 8, 11, 12)))
        (1, 2, 3, 11, 12)
        >>> PhaseIdx.double_exc(Half_determinant.from_orbs(range(9)),
        ...                     Half_determinant.from_orbs((0, 1, 3, 4, 5, 6, 7, 11, 17)))
        (-1, 2, 8, 11, 17)
        """
        h1, h2, p1, p2 = PhaseIdx.double_exc_no_phase(sdet_i, sdet_j)
        return PhaseIdx.double_phase(sdet_i, h1, h2, p1, p2), h1, h2, p1, p2

    @staticmethod
    def creation_phase(det: Determinant, orb: OrbitalIdx, spin: str) -> int:
        """Sign of a^\\dagger_orb |det>, spin-orbitals ordered up first then dn

        >>> d = Determinant.from_orbs((0, 2), (1,))
        >>> PhaseIdx.creation_phase(d, 1, "up"), PhaseIdx.creation_phase(d, 3, "up"), PhaseIdx.creation_phase(d, 0, "dn")
        (-1, 1, 1)
        """
        if spin == "up":
            n = det.up.n_below(orb)
        elif spin == "dn":
            n = det.up.popcnt() + det.dn.n_below(orb)
        else:
            raise NotImplementedError
        return -1 if n % 2 else 1


#   _   _                 _ _ _              _
#  | | | |               (_) | |            (_)
#  | |_| | __ _ _ __ ___  _| | |_ ___  _ __  _  __ _ _ __
#  |  _  |/ _` | '_ ` _ \| | | __/ _ \| '_ \| |/ _` | '_ \
#  | | | | (_| | | | | | | | | || (_) | | | | | (_| | | | |
#  \_| |_/\__,_|_| |_| |_|_|_|\__\___/|_| |_|_|\__,_|_| |_|
#


@dataclass
class Hamiltonian(object):
    """
    Electronic Hamiltonian over Slater determinants, Slater-Condon rules.
    Integrals are in chemist notation, (pq|rs) = <pr|qs>.

    https://en.wikipedia.org/wiki/Slater%E2%80%93Condon_rules
    """

    integrals: Integrals

    @property
    def n_orbs(self) -> int:
        return self.integrals.n_orbs

    def H_ii(self, det_i: Determinant) -> Energy:
        """Diagonal element, E0 + one-body + Coulomb - exchange"""
        get_1b, get_2b = self.integrals.get_1b, self.integrals.get_2b
        occ_up = det_i.up.get_occupied_orbs()
        occ_dn = det_i.dn.get_occupied_orbs()

        energy = self.integrals.core_energy
        energy += sum(get_1b(i, i) for i in chain(occ_up, occ_dn))
        for occ in (occ_up, occ_dn):
            for i, j in combinations(occ, 2):
                energy += get_2b(i, i, j, j) - get_2b(i, j, j, i)
        for i, j in product(occ_up, occ_dn):
            energy += get_2b(i, i, j, j)
        return energy

    def H_single(self, det_i: Determinant, det_j: Determinant, spin: str) -> float:
        """<I|H|J> when I and J differ by one orbital of the `spin` channel"""
        get_2b = self.integrals.get_2b
        if spin == "up":
            sdet_i, sdet_j, oppdet_i = det_i.up, det_j.up, det_i.dn
        elif spin == "dn":
            sdet_i, sdet_j, oppdet_i = det_i.dn, det_j.dn, det_i.up
        else:
            raise NotImplementedError

        phase, h, p = PhaseIdx.single_exc(sdet_i, sdet_j)
        value = self.integrals.get_1b(h, p)
        for k in sdet_i.get_occupied_orbs():
            if k != h:
                value += get_2b(h, p, k, k) - get_2b(h, k, k, p)
        for k in oppdet_i.get_occupied_orbs():
            value += get_2b(h, p, k, k)
        return phase * value

    def H_double(self, det_i: Determinant, det_j: Determinant, no_sign: bool = False) -> float:
        """Two-body element between determinants differing by a double excitation.
        Any other difference pattern gives 0.

        >>> integrals = Integrals(n_orbs=4, n_elecs=2)
        >>> integrals.set_2b(0, 2, 1, 3, 0.5)
        >>> integrals.set_2b(0, 3, 1, 2, 0.2)
        >>> h = Hamiltonian(integrals)
        >>> round(h.H_double(Determinant.from_orbs((0, 1), ()), Determinant.from_orbs((2, 3), ())), 12)
        0.3
        >>> h.H_double(Determinant.from_orbs((0,), (1,)), Determinant.from_orbs((2,), (3,)))
        0.5
        >>> h.H_double(Determinant.from_orbs((0,), (1,)), Determinant.from_orbs((0,), (3,)))
        0.0
        """
        get_2b = self.integrals.get_2b
        (holes_up, parts_up), (holes_dn, parts_dn) = det_i.up.diff(det_j.up), det_i.dn.diff(det_j.dn)
        n_up, n_dn = len(holes_up), len(holes_dn)
        if n_up != len(parts_up) or n_dn != len(parts_dn):
            return 0.0

        if (n_up, n_dn) in ((2, 0), (0, 2)):
            sdet_i, sdet_j = (det_i.up, det_j.up) if n_up else (det_i.dn, det_j.dn)
            phase, h1, h2, p1, p2 = PhaseIdx.double_exc(sdet_i, sdet_j)
            two_body_energy = get_2b(h1, p1, h2, p2) - get_2b(h1, p2, h2, p1)
        elif (n_up, n_dn) == (1, 1):
            phase_up, h1, p1 = PhaseIdx.single_exc(det_i.up, det_j.up)
            phase_dn, h2, p2 = PhaseIdx.single_exc(det_i.dn, det_j.dn)
            phase = phase_up * phase_dn
            two_body_energy = get_2b(h1, p1, h2, p2)
        else:
            return 0.0

        if no_sign:
            return two_body_energy
        return phase * two_body_energy

    def H_ij(self, det_i: Determinant, det_j: Determinant) -> float:
        """<I|H|J>, zero unless I and J differ by at most two electrons"""
        if det_i == det_j:
            return self.H_ii(det_i)
        if det_i.up.popcnt() != det_j.up.popcnt() or det_i.dn.popcnt() != det_j.dn.popcnt():
            return 0.0
        ed_up, ed_dn = det_i.exc_degree(det_j)
        if (ed_up, ed_dn) == (1, 0):
            return self.H_single(det_i, det_j, "up")
        elif (ed_up, ed_dn) == (0, 1):
            return self.H_single(det_i, det_j, "dn")
        elif ed_up + ed_dn == 2:
            return self.H_double(det_i, det_j)
        return 0.0


#   _   _ _____ _____
#  | | | /  __ \_   _|   __ _ _   _  ___ _   _  ___
#  | |_| | /  \/ | |    / _` | | | |/ _ \ | | |/ _ \
#  |  _  | |     | |   | (_| | |_| |  __/ |_| |  __/
#  | | | | \__/\_| |_   \__, |\__,_|\___|\__,_|\___|
#  \_| |_/\____/\___/      |_|
#


class Hrs(NamedTuple):
    """Magnitude of a double excitation into target spin-orbitals (r, s)"""

    H: float
    r: int
    s: int


class HCI_queue(object):
    """Sorted double-excitation magnitudes, one bucket per source pair.

    Buckets are keyed by `compound_idx2(p, q)` of spin-orbital indices:
    * same spin: p < q < n_orbs, targets r < s < n_orbs. Used for both
      channels, the magnitudes being spin independent.
    * opposite spin: p < n_orbs <= q, targets r < n_orbs <= s.
    Entries are sorted by descending magnitude and never zero.
    """

    def __init__(
        self,
        ctx: Execution_context,
        hamiltonian: Hamiltonian,
        orb_sym: List[SymmetryLabel],
        product_table: Product_table,
    ):
        self.ctx = ctx
        self.hamiltonian = hamiltonian
        self.n_orbs = hamiltonian.n_orbs
        self.orb_sym = orb_sym
        self.product_table = product_table
        self.queue: Dict[int, List[Hrs]] = {}
        self.max_hci_queue_elem = 0.0

    @cached_property
    def sym_orbs(self) -> List[List[OrbitalIdx]]:
        """Orbitals grouped by symmetry label. Symmetry starts from 1, index 0 is unused."""
        sym_orbs = [[] for _ in range(max([self.product_table.n_syms, *self.orb_sym]) + 1)]
        for orb, sym in enumerate(self.orb_sym):
            sym_orbs[sym].append(orb)
        return sym_orbs

    @property
    def n_entries(self) -> int:
        return sum(len(bucket) for bucket in self.queue.values())

    def source_pairs(self) -> List[Tuple[int, int]]:
        n = self.n_orbs
        same_spin = [(p, q) for p, q in combinations(range(n), 2)]
        opposite_spin = [(p, q + n) for p, q in product(range(n), repeat=2)]
        return same_spin + opposite_spin

    def get_hci_queue_elem(self, p: int, q: int, r: int, s: int) -> float:
        """|<pq|H|rs>| between two-electron micro determinants, spin-orbital indices"""
        n = self.n_orbs
        if p == q or r == s or p == r or q == s or p == s or q == r:
            return 0.0
        if p < n and q < n:
            assert r < n and s < n
            det_pq = Determinant.from_orbs((p, q), ())
            det_rs = Determinant.from_orbs((r, s), ())
        elif p < n <= q:
            assert r < n <= s
            det_pq = Determinant.from_orbs((p,), (q - n,))
            det_rs = Determinant.from_orbs((r,), (s - n,))
        else:
            raise ValueError(f"impossible pqrs for getting hci queue elem: {(p, q, r, s)}")
        return abs(self.hamiltonian.H_double(det_pq, det_rs, no_sign=True))

    def bucket(self, p: int, q: int) -> List[Hrs]:
        n = self.n_orbs
        get_product = self.product_table.get_product
        same_spin = q < n
        sym_pq = get_product(self.orb_sym[p % n], self.orb_sym[q % n])
        entries = []
        for r in range(n):
            sym_s = get_product(sym_pq, self.orb_sym[r])
            for s in self.sym_orbs[sym_s]:
                if same_spin and s < r:
                    continue
                # dn target of an opposite spin pair
                s_spin = s if same_spin else s + n
                H = self.get_hci_queue_elem(p, q, r, s_spin)
                if H == 0.0:
                    continue
                entries.append(Hrs(H, r, s_spin))
        entries.sort(key=lambda hrs: hrs.H, reverse=True)
        return entries

    def build(self) -> "HCI_queue":
        """Source pairs are split round-robin over the ranks, every rank gets the full queue"""
        if self.product_table.point_group == Point_group.Dooh:
            raise UnsupportedSymmetryError("hci queue for Dooh requires inversion symmetry handling")

        pairs = self.source_pairs()
        local_queue = {}
        for idx in self.ctx.local_slice(len(pairs)):
            p, q = pairs[idx]
            bucket = self.bucket(p, q)
            if bucket:
                local_queue[compound_idx2(p, q)] = bucket
        local_max = max((bucket[0].H for bucket in local_queue.values()), default=0.0)

        self.queue = {}
        for chunk in self.ctx.comm.allgather(local_queue):
            self.queue.update(chunk)
        self.max_hci_queue_elem = self.ctx.comm.allreduce(local_max, op=MPI.MAX)

        self.ctx.print_master(f"Max hci queue elem: {self.max_hci_queue_elem:.10f}")
        self.ctx.print_master(f"Number of entries in hci queue: {self.n_entries:,}")
        return self

    def get(self, p: int, q: int) -> List[Hrs]:
        return self.queue.get(compound_idx2(p, q), [])


#   _____ _                                   _
#  /  __ \ |                                 | |
#  | /  \/ |__   ___ _ __ ___    ___ _   _ ___| |_ ___ _ __ ___
#  | |   | '_ \ / _ \ '_ ` _ \  / __| | | / __| __/ _ \ '_ ` _ \
#  | \__/\ | | |  __/ | | | | | \__ \ |_| \__ \ ||  __/ | | | | |
#   \____/_| |_|\___|_| |_| |_| |___/\__, |___/\__\___|_| |_| |_|
#                                     __/ |
#                                    |___/


class Chem_system(object):
    """Molecular system: integrals, symmetry, hci queue and the current
    wave function (`dets`, `coefs`, `energy_var`)."""

    def __init__(self, ctx: Execution_context, config: Config, result: Optional[Result] = None):
        self.ctx = ctx
        self.config = config
        self.result = Result() if result is None else result
        self.dets: Psi_det = []
        self.coefs: Psi_coef = []
        self.energy_var: Energy = 0.0

    def setup(self, integrals: Optional[Integrals] = None):
        config = self.config
        self.n_up = config.get("n_up")
        self.n_dn = config.get("n_dn")
        self.n_elecs = self.n_up + self.n_dn
        self.result.put("n_elecs", self.n_elecs)
        self.time_sym = config.get("time_sym", False)
        self.z = config.get("z", 1)

        self.point_group = Point_group.from_str(config.get("chem.point_group", "None"))
        self.product_table = Product_table(self.point_group)
        self.ctx.print_master(
            f"Number of MPI ranks: {self.ctx.world_size}, threads per rank: {self.ctx.n_threads}"
        )

        timer = self.ctx.timer
        with timer.section("load integrals"):
            if integrals is None:
                integrals = load_integrals(self.ctx, config.get("integrals_file", "FCIDUMP"))
            self.integrals = integrals
            self.n_orbs = integrals.n_orbs
            self.orb_sym = [self.product_table.normalize(sym) for sym in integrals.orb_sym]
            self.hamiltonian = Hamiltonian(integrals)

        with timer.section("setup hci queue"):
            self.setup_hci_queue()

        det_hf = integrals.det_hf(self.n_up, self.n_dn)
        self.dets = [det_hf]
        self.coefs = [1.0]
        self.energy_var = self.hamiltonian.H_ii(det_hf)
        return self

    def setup_hci_queue(self):
        self.hci_queue = HCI_queue(
            self.ctx, self.hamiltonian, self.orb_sym, self.product_table
        ).build()
        self.sym_orbs = self.hci_queue.sym_orbs
        self.max_hci_queue_elem = self.hci_queue.max_hci_queue_elem

    def get_hamiltonian_elem(self, det_i: Determinant, det_j: Determinant) -> float:
        return self.hamiltonian.H_ij(det_i, det_j)

    def get_two_body_double(self, det_i: Determinant, det_j: Determinant, no_sign: bool = False) -> float:
        return self.hamiltonian.H_double(det_i, det_j, no_sign)

    #
    # Connected determinants
    #

    def single_excitations(
        self, det: Determinant, eps_max: float, eps_min: float
    ) -> Iterator[Tuple[Determinant, float]]:
        for spin, sdet in (("up", det.up), ("dn", det.dn)):
            for p in sdet.get_occupied_orbs():
                for r in self.sym_orbs[self.orb_sym[p]]:
                    if sdet.has(r):
                        continue
                    connected_det = det.apply_single_excitation(p, r, spin)
                    matrix_elem = self.hamiltonian.H_single(det, connected_det, spin)
                    if matrix_elem == 0.0 or not eps_min <= abs(matrix_elem) <= eps_max:
                        continue
                    yield connected_det, matrix_elem

    def double_excitations(
        self, det: Determinant, eps_max: float, eps_min: float
    ) -> Iterator[Tuple[Determinant, float]]:
        n = self.n_orbs

        def scan(bucket, occupied_r, occupied_s):
            # Buckets are sorted by descending H
            for hrs in bucket:
                if hrs.H < eps_min:
                    break
                if hrs.H > eps_max:
                    continue
                if occupied_r.has(hrs.r) or occupied_s.has(hrs.s % n):
                    continue
                yield hrs

        for spin, sdet in (("up", det.up), ("dn", det.dn)):
            for p, q in combinations(sdet.get_occupied_orbs(), 2):
                for hrs in scan(self.hci_queue.get(p, q), sdet, sdet):
                    connected_det = det.apply_same_spin_double_excitation(p, hrs.r, q, hrs.s, spin)
                    yield connected_det, self.hamiltonian.H_double(det, connected_det)

        for p, q in product(det.up.get_occupied_orbs(), det.dn.get_occupied_orbs()):
            for hrs in scan(self.hci_queue.get(p, q + n), det.up, det.dn):
                connected_det = det.apply_opposite_spin_double_excitation(p, hrs.r, q, hrs.s - n)
                yield connected_det, self.hamiltonian.H_double(det, connected_det)

    def find_connected_dets(
        self, det: Determinant, eps_max: float = math.inf, eps_min: float = 0.0
    ) -> Iterator[Tuple[Determinant, float]]:
        """Determinants connected to `det` by a single or a double excitation with
        eps_min <= |<det|H|connected_det>| <= eps_max, with their matrix element.

        With time reversal symmetry, determinants are emitted once in the canonical
        form up <= dn, with the element taken between the time reversal adapted
        functions (|X> + z|X_bar>) / sqrt(2). Both partners of a pair contribute.
        """
        if self.time_sym:
            eps_max, eps_min = eps_max * SQRT2, eps_min * SQRT2
        candidates = chain(
            self.single_excitations(det, eps_max, eps_min),
            self.double_excitations(det, eps_max, eps_min),
        )
        if not self.time_sym:
            yield from candidates
            return

        folded: Dict[Determinant, float] = {}
        for connected_det, matrix_elem in candidates:
            if connected_det.is_self_conjugate() and self.z < 0:
                continue
            if connected_det == det.swap():
                continue
            if det.is_self_conjugate() and not connected_det.is_self_conjugate():
                matrix_elem *= SQRT2_INV
            elif not det.is_self_conjugate() and connected_det.is_self_conjugate():
                matrix_elem *= SQRT2
            if connected_det.up > connected_det.dn:
                connected_det = connected_det.swap()
                matrix_elem *= self.z
            folded[connected_det] = folded.get(connected_det, 0.0) + matrix_elem

        for connected_det, matrix_elem in folded.items():
            # Partners cancel for a self conjugate reference when z < 0
            if matrix_elem != 0.0:
                yield connected_det, matrix_elem


#   _____                           _
#  |  __ \                         | |
#  | |  \/ ___ _ __   ___ _ __ __ _| |_ ___  _ __
#  | | __ / _ \ '_ \ / _ \ '__/ _` | __/ _ \| '__|
#  | |_\ \  __/ | | |  __/ | | (_| | || (_) | |
#   \____/\___|_| |_|\___|_|  \__,_|\__\___/|_|
#


class Hamiltonian_generator(object):
    """Sparse Hamiltonian in a fixed basis of determinants, distributed by rows.
    Each rank handles the local H_i, a len(psi_local) x len(psi_internal) block of H.
    Rebuilt (not updated) whenever the basis changes.

    :param ctx: Execution_context
    :param hamiltonian: Slater-Condon evaluator
    :param psi_internal: the basis
    """

    def __init__(self, ctx: Execution_context, hamiltonian: Hamiltonian, psi_internal: Psi_det):
        self.ctx = ctx
        self.comm = ctx.comm
        self.world_size = ctx.world_size
        self.rank = ctx.rank
        # Full problem size is no. of internal determinants
        self.full_problem_size = len(psi_internal)
        self.psi_internal = psi_internal
        self.hamiltonian = hamiltonian

    @cached_property
    def distribution(self):
        """
        >>> h = Hamiltonian_generator(Execution_context(), None, [0]*100)
        >>> h.world_size = 3
        >>> h.distribution
        array([34, 33, 33], dtype=int32)
        >>> h = Hamiltonian_generator(Execution_context(), None, [0]*101)
        >>> h.world_size = 3
        >>> h.distribution
        array([34, 34, 33], dtype=int32)
        """
        floor, remainder = divmod(self.full_problem_size, self.world_size)
        ceiling = floor + 1
        return np.array([ceiling] * remainder + [floor] * (self.world_size - remainder), dtype="i")

    @cached_property
    def local_size(self):
        return self.distribution[self.rank]

    @cached_property
    def offsets(self):
        """
        >>> h = Hamiltonian_generator(Execution_context(), None, [0]*100)
        >>> h.world_size = 3
        >>> h.offsets
        array([ 0, 34, 67], dtype=int32)
        """
        # Compute offsets (start of the local section) for all nodes
        A = np.zeros(self.world_size, dtype="i")
        np.add.accumulate(self.distribution[:-1], out=A[1:])
        return A

    @cached_property
    def psi_local(self):
        return self.psi_internal[
            self.offsets[self.rank] : (self.offsets[self.rank] + self.distribution[self.rank])
        ]

    @cached_property
    def D_i(self):
        """Diagonal elements of the local H_i, as a numpy vector"""
        return np.array([self.hamiltonian.H_ii(det) for det in self.psi_local], dtype="float")

    @cached_property
    def H_i_matrix_elements(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Non-zero elements of H_i in coordinate format: (local rows, global columns, values)"""
        rows, cols, vals = [], [], []
        for I, det_I in enumerate(self.psi_local):
            for J, det_J in enumerate(self.psi_internal):
                ed_up, ed_dn = det_I.exc_degree(det_J)
                if ed_up + ed_dn > 2:
                    continue
                matrix_elt = self.hamiltonian.H_ij(det_I, det_J)
                if matrix_elt != 0.0:
                    rows.append(I)
                    cols.append(J)
                    vals.append(matrix_elt)
        return (
            np.array(rows, dtype="i"),
            np.array(cols, dtype="i"),
            np.array(vals, dtype="float"),
        )

    def H_i_implicit_matrix_product(self, M: np.ndarray) -> np.ndarray:
        """W_i = H_i * M, for M a vector or a (full_problem_size x k) matrix, real or complex"""
        rows, cols, vals = self.H_i_matrix_elements
        W_i = np.zeros((self.local_size,) + M.shape[1:], dtype=np.result_type(M, vals))
        if M.ndim == 1:
            np.add.at(W_i, rows, vals * M[cols])
        else:
            np.add.at(W_i, rows, vals[:, None] * M[cols])
        return W_i

    def matrix_product(self, v: np.ndarray) -> np.ndarray:
        """H * v, gathered on every rank"""
        W_i = self.H_i_implicit_matrix_product(v)
        if np.iscomplexobj(W_i):
            W_i, mpi_type = W_i.astype("complex128"), MPI.C_DOUBLE_COMPLEX
        else:
            W_i, mpi_type = W_i.astype("float"), MPI.DOUBLE
        W = np.empty(self.full_problem_size, dtype=W_i.dtype)
        self.comm.Allgatherv([W_i, mpi_type], [W, self.distribution, self.offsets, mpi_type])
        return W

    def E(self, psi_coef: Psi_coef) -> Energy:
        """Variational energy <psi|H|psi> / <psi|psi>"""
        c = np.array(psi_coef, dtype="float")
        H_i_psi_det = self.H_i_implicit_matrix_product(c)
        c_i = c[self.offsets[self.rank] : (self.offsets[self.rank] + self.distribution[self.rank])]
        E_i = np.array([np.dot(c_i, H_i_psi_det)], dtype="float")
        E = np.zeros(1, dtype="float")
        # Default op=SUM, reduce contributions
        self.comm.Allreduce([E_i, MPI.DOUBLE], [E, MPI.DOUBLE])
        return E.item() / np.dot(c, c)


import inspect

__test__ = {}
for name, member in inspect.getmembers(Hamiltonian_generator):
    if type(member) == cached_property:
        __test__[f"Hamiltonian_generator.{name}"] = member
