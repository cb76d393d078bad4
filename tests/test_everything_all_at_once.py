#!/usr/bin/env python3

import unittest
import doctest
import time
import sys
import os
import io as _io
import gzip
import json
import random
import tempfile
from contextlib import redirect_stdout
from itertools import combinations, combinations_with_replacement, product

import numpy as np

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from qhci import drivers, fundamental_types, green, integral_indexing_utils, io, parallel
from qhci.integral_indexing_utils import (
    compound_idx4_reverse,
    compound_idx4,
    canonical_idx4,
    compound_idx2,
    compound_idx2_reverse,
    compound_idx4_reverse_all,
)
from qhci.drivers import (
    Hamiltonian,
    Hrs,
    Chem_system,
    Hamiltonian_generator,
)
from qhci.fundamental_types import (
    Determinant,
    Half_determinant,
    Point_group,
    Product_table,
    SolverNotConvergedError,
    UnsupportedSymmetryError,
)
from qhci.green import Green, Variational_wavefunction, cocg
from qhci.io import Config, Integrals, Result, load_integrals, load_wf
from qhci.parallel import Execution_context

PROFILING = False


class Timing:
    def setUp(self):
        print(f"{self.id()} ... ", end="", flush=True)
        self.startTime = time.perf_counter()
        if PROFILING:
            import cProfile

            self.pr = cProfile.Profile()
            self.pr.enable()

    def tearDown(self):
        t = time.perf_counter() - self.startTime
        print(f"ok ({t:.3f}s)")
        if PROFILING:
            from pstats import Stats

            self.pr.disable()
            p = Stats(self.pr)
            p.strip_dirs().sort_stats("tottime").print_stats(0.05)


def load_tests(loader, tests, ignore):
    for module in (fundamental_types, integral_indexing_utils, parallel, io, drivers, green):
        tests.addTests(doctest.DocTestSuite(module))
    return tests


#
# Integrals used across the tests
#


def random_integrals(n_orbs, orb_sym, seed=0):
    """Random real integrals which respect the D2h symmetry of `orb_sym`"""
    rng = random.Random(seed)
    table = Product_table(Point_group.D2h)
    integrals = Integrals(
        n_orbs=n_orbs, n_elecs=0, core_energy=rng.uniform(0, 1), orb_sym=list(orb_sym)
    )
    for p, q in combinations_with_replacement(range(n_orbs), 2):
        if orb_sym[p] == orb_sym[q]:
            integrals.set_1b(p, q, rng.uniform(-1, 1))
    for p, q, r, s in product(range(n_orbs), repeat=4):
        if compound_idx4(p, q, r, s) in integrals.d_two_e_integral:
            continue
        sym_pq = table.get_product(orb_sym[p], orb_sym[q])
        sym_rs = table.get_product(orb_sym[r], orb_sym[s])
        if table.get_product(sym_pq, sym_rs) == 1:
            integrals.set_2b(p, q, r, s, rng.uniform(-0.5, 0.5))
    return integrals


def h2_like_integrals():
    """Two orbitals of different parity: no single excitation couples the ground state"""
    integrals = Integrals(n_orbs=2, n_elecs=2, core_energy=0.7)
    integrals.set_1b(0, 0, -1.25)
    integrals.set_1b(1, 1, -0.47)
    integrals.set_2b(0, 0, 0, 0, 0.67)
    integrals.set_2b(1, 1, 1, 1, 0.70)
    integrals.set_2b(0, 0, 1, 1, 0.66)
    integrals.set_2b(0, 1, 0, 1, 0.18)
    return integrals


def all_dets(n_orbs, n_up, n_dn):
    for up in combinations(range(n_orbs), n_up):
        for dn in combinations(range(n_orbs), n_dn):
            yield Determinant.from_orbs(up, dn)


def quiet(f, *args, **kwargs):
    with redirect_stdout(_io.StringIO()):
        return f(*args, **kwargs)


def make_system(integrals, point_group="D2h", **config):
    config.setdefault("n_up", 2)
    config.setdefault("n_dn", 2)
    config["chem"] = {"point_group": point_group}
    return quiet(Chem_system(Execution_context(), Config(config)).setup, integrals)


class Test_Index(Timing, unittest.TestCase):
    def test_idx2_reverse(self, n=10000, nmax=(1 << 63) - 1):
        def check_idx2_reverse(ij):
            i, j = compound_idx2_reverse(ij)
            self.assertTrue(i <= j)
            self.assertEqual(ij, compound_idx2(i, j))

        for ij in random.sample(range(nmax), k=n):
            check_idx2_reverse(ij)

    def test_idx4_reverse(self, n=10000, nmax=(1 << 63) - 1):
        def check_idx4_reverse(pqrs):
            p, q, r, s = compound_idx4_reverse(pqrs)
            self.assertTrue(p <= q)
            self.assertTrue(r <= s)
            self.assertTrue(compound_idx2(p, q) <= compound_idx2(r, s))
            self.assertEqual(pqrs, compound_idx4(p, q, r, s))

        for pqrs in random.sample(range(nmax), k=n):
            check_idx4_reverse(pqrs)

    def test_idx4_reverse_all(self, n=1000, nmax=(1 << 63) - 1):
        for pqrs in random.sample(range(nmax), k=n):
            for p, q, r, s in compound_idx4_reverse_all(pqrs):
                self.assertEqual(compound_idx4(p, q, r, s), pqrs)

    def test_canonical_idx4(self, n=1000, nmax=(1 << 63) - 1):
        for pqrs in random.sample(range(nmax), k=n):
            self.assertEqual(compound_idx4_reverse(pqrs), canonical_idx4(*compound_idx4_reverse(pqrs)))
            for idx in compound_idx4_reverse_all(pqrs):
                self.assertEqual(canonical_idx4(*compound_idx4_reverse(pqrs)), canonical_idx4(*idx))


class Test_Determinant(Timing, unittest.TestCase):
    def test_half_determinant(self):
        sdet = Half_determinant.from_orbs((0, 3, 5))
        self.assertEqual(sdet.get_occupied_orbs(), (0, 3, 5))
        self.assertEqual(sdet.popcnt(), 3)
        self.assertTrue(sdet.has(3))
        self.assertFalse(sdet.has(4))
        # Value semantics
        self.assertEqual(sdet.set(4).get_occupied_orbs(), (0, 3, 4, 5))
        self.assertEqual(sdet.get_occupied_orbs(), (0, 3, 5))
        self.assertEqual(sdet.diff(Half_determinant.from_orbs((1, 3, 6))), ((0, 5), (1, 6)))

    def test_single_excitation_round_trip(self):
        det = Determinant.from_orbs((0, 1, 4), (2, 3))
        n_orbs = 6
        for spin, sdet in (("up", det.up), ("dn", det.dn)):
            for h in sdet.get_occupied_orbs():
                for p in range(n_orbs):
                    if sdet.has(p):
                        continue
                    trial = det.apply_single_excitation(h, p, spin)
                    self.assertNotEqual(trial, det)
                    self.assertEqual(trial.apply_single_excitation(p, h, spin), det)
        self.assertEqual(det, Determinant.from_orbs((0, 1, 4), (2, 3)))

    def test_ordering(self):
        a = Determinant.from_orbs((0,), (1,))
        b = Determinant.from_orbs((1,), (0,))
        self.assertLess(a, b)
        self.assertEqual(a.swap(), b)
        self.assertEqual(len({a, b, b.swap()}), 2)
        self.assertTrue(Determinant.from_orbs((0, 2), (0, 2)).is_self_conjugate())


class Test_Symmetry(Timing, unittest.TestCase):
    def test_d2h_product_table(self):
        table = Product_table(Point_group.D2h)
        labels = range(1, 9)
        for a, b in product(labels, repeat=2):
            self.assertIn(table.get_product(a, b), labels)
            self.assertEqual(table.get_product(a, b), table.get_product(b, a))
        for a, b, c in product(labels, repeat=3):
            self.assertEqual(
                table.get_product(table.get_product(a, b), c), table.get_product(a, table.get_product(b, c))
            )
        for a in labels:
            self.assertEqual(table.get_product(1, a), a)
            self.assertEqual(table.get_product(a, a), 1)

    def test_trivial_group(self):
        table = Product_table(Point_group.from_str("None"))
        self.assertEqual(table.get_product(1, 1), 1)
        self.assertEqual(table.n_syms, 1)
        self.assertEqual(table.normalize(3), 1)

    def test_dooh_is_unsupported(self):
        self.assertEqual(Point_group.from_str("dih"), Point_group.Dooh)
        with self.assertRaises(UnsupportedSymmetryError):
            Product_table(Point_group.Dooh).get_product(1, 2)
        with self.assertRaises(UnsupportedSymmetryError):
            make_system(h2_like_integrals(), point_group="Dooh", n_up=1, n_dn=1)

    def test_label_out_of_range(self):
        with self.assertRaises(ValueError):
            Product_table(Point_group.D2h).normalize(9)


class Test_Hamiltonian(Timing, unittest.TestCase):
    @property
    def integrals(self):
        return random_integrals(6, [1] * 6, seed=1)

    def test_diagonal_two_electrons(self):
        integrals = h2_like_integrals()
        h = Hamiltonian(integrals)
        det = Determinant.from_orbs((0,), (0,))
        self.assertAlmostEqual(h.H_ii(det), 0.7 - 2 * 1.25 + 0.67)
        det = Determinant.from_orbs((0, 1), ())
        self.assertAlmostEqual(h.H_ii(det), 0.7 - 1.25 - 0.47 + 0.66 - 0.18)

    def test_same_spin_double_closed_form(self):
        integrals = self.integrals
        h = Hamiltonian(integrals)
        det_i = Determinant.from_orbs((0, 1), (0,))
        det_j = Determinant.from_orbs((2, 3), (0,))
        expected = integrals.get_2b(0, 2, 1, 3) - integrals.get_2b(0, 3, 1, 2)
        self.assertAlmostEqual(h.H_double(det_i, det_j), expected)
        self.assertAlmostEqual(h.H_ij(det_i, det_j), expected)
        # |012> = -a+_1 a+_0 a+_2 |>, so <134|H|012> = -<34||02>
        det_i = Determinant.from_orbs((0, 1, 2), ())
        det_j = Determinant.from_orbs((1, 3, 4), ())
        expected = -(integrals.get_2b(0, 3, 2, 4) - integrals.get_2b(0, 4, 2, 3))
        self.assertNotEqual(expected, 0.0)
        self.assertAlmostEqual(h.H_double(det_i, det_j), expected)
        self.assertAlmostEqual(h.H_double(det_i, det_j, no_sign=True), -expected)

    def test_opposite_spin_double(self):
        integrals = self.integrals
        h = Hamiltonian(integrals)
        det_i = Determinant.from_orbs((0, 1), (0, 2))
        det_j = Determinant.from_orbs((1, 3), (0, 5))
        # up 0 -> 3 crosses 1, dn 2 -> 5 crosses nothing
        self.assertAlmostEqual(h.H_double(det_i, det_j), -integrals.get_2b(0, 3, 2, 5))

    def test_no_interaction_is_zero(self):
        h = Hamiltonian(self.integrals)
        det = Determinant.from_orbs((0, 1), (0, 1))
        self.assertEqual(h.H_ij(det, Determinant.from_orbs((2, 3), (2, 3))), 0.0)
        self.assertEqual(h.H_double(det, Determinant.from_orbs((0, 2), (0, 1))), 0.0)
        # Different number of electrons
        self.assertEqual(h.H_ij(det, Determinant.from_orbs((0, 1, 2), (0,))), 0.0)

    def test_hermitian(self):
        h = Hamiltonian(self.integrals)
        dets = list(all_dets(6, 2, 2))
        rng = random.Random(3)
        for _ in range(500):
            det_i, det_j = rng.sample(dets, 2)
            self.assertAlmostEqual(h.H_ij(det_i, det_j), h.H_ij(det_j, det_i))

    def test_coinciding_indices_are_zero(self):
        system = make_system(self.integrals)
        queue, n = system.hci_queue, system.n_orbs
        for p, q, r, s in product(range(n), repeat=4):
            if len({p, q, r, s}) < 4:
                self.assertEqual(queue.get_hci_queue_elem(p, q, r, s), 0.0)
        for p, q, r, s in product(range(n), repeat=4):
            if p == r or q == s:
                self.assertEqual(queue.get_hci_queue_elem(p, q + n, r, s + n), 0.0)


class Test_HCI_queue(Timing, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.system = make_system(random_integrals(6, [1, 2, 1, 3, 4, 1], seed=2))

    def test_sorted_and_bounded(self):
        queue = self.system.hci_queue
        self.assertGreater(queue.n_entries, 0)
        for bucket in queue.queue.values():
            self.assertTrue(bucket)
            magnitudes = [hrs.H for hrs in bucket]
            self.assertEqual(magnitudes, sorted(magnitudes, reverse=True))
            self.assertTrue(all(H > 0.0 for H in magnitudes))
            self.assertLessEqual(bucket[0].H, queue.max_hci_queue_elem)
        self.assertEqual(max(bucket[0].H for bucket in queue.queue.values()), queue.max_hci_queue_elem)

    def test_targets(self):
        queue, n = self.system.hci_queue, self.system.n_orbs
        table, orb_sym = self.system.product_table, self.system.orb_sym
        for p, q in queue.source_pairs():
            for hrs in queue.get(p, q):
                if q < n:
                    self.assertTrue(hrs.r < hrs.s < n)
                    s = hrs.s
                else:
                    self.assertTrue(hrs.r < n <= hrs.s)
                    s = hrs.s - n
                sym_pq = table.get_product(orb_sym[p % n], orb_sym[q % n])
                self.assertEqual(table.get_product(orb_sym[hrs.r], orb_sym[s]), sym_pq)

    def test_malformed_spin_orbitals(self):
        queue, n = self.system.hci_queue, self.system.n_orbs
        # dn source before an up source
        with self.assertRaises(ValueError):
            queue.get_hci_queue_elem(0 + n, 1, 2, 3)
        with self.assertRaises(ValueError):
            queue.get_hci_queue_elem(0 + n, 1 + n, 2 + n, 3 + n)
        # Target channels inconsistent with the source channels
        with self.assertRaises(AssertionError):
            queue.get_hci_queue_elem(0, 1, 2, 3 + n)
        with self.assertRaises(AssertionError):
            queue.get_hci_queue_elem(0, 1 + n, 2, 3)

    def test_complete(self):
        # Every non-zero same spin quadruple is in the queue
        queue, n = self.system.hci_queue, self.system.n_orbs
        for (p, q), (r, s) in product(combinations(range(n), 2), repeat=2):
            H = queue.get_hci_queue_elem(p, q, r, s)
            entries = [hrs for hrs in queue.get(p, q) if (hrs.r, hrs.s) == (r, s)]
            self.assertEqual(len(entries), 1 if H else 0)


class Test_Connected_Determinants(Timing, unittest.TestCase):
    n_orbs = 6
    orb_sym = [1, 2, 1, 3, 4, 1]

    def brute_force(self, system, det):
        n_up, n_dn = det.up.popcnt(), det.dn.popcnt()
        connected = {}
        for det_j in all_dets(self.n_orbs, n_up, n_dn):
            if det_j == det or sum(det.exc_degree(det_j)) > 2:
                continue
            H = system.get_hamiltonian_elem(det, det_j)
            if H != 0.0:
                connected[det_j] = H
        return connected

    def test_complete_and_unique(self):
        system = make_system(random_integrals(self.n_orbs, self.orb_sym, seed=4), n_up=3, n_dn=2)
        for det in (system.dets[0], Determinant.from_orbs((0, 2, 5), (1, 3))):
            emitted = list(system.find_connected_dets(det))
            connected = dict(emitted)
            self.assertEqual(len(emitted), len(connected))
            self.assertNotIn(det, connected)
            reference = self.brute_force(system, det)
            self.assertEqual(set(connected), set(reference))
            for det_j, H in connected.items():
                self.assertAlmostEqual(H, reference[det_j])

    def test_window(self):
        system = make_system(random_integrals(self.n_orbs, self.orb_sym, seed=5), n_up=3, n_dn=3)
        det = system.dets[0]
        previous = dict(system.find_connected_dets(det))
        for eps_min in (1e-3, 1e-2, 0.05, 0.1, 0.2, 0.5):
            current = dict(system.find_connected_dets(det, eps_min=eps_min))
            self.assertLessEqual(set(current), set(previous))
            self.assertTrue(all(abs(H) >= eps_min for H in current.values()))
            previous = current
        capped = dict(system.find_connected_dets(det, eps_max=0.1))
        self.assertTrue(all(abs(H) <= 0.1 for H in capped.values()))

    def time_reversal_adapted(self, system, det):
        """Components of (|X> + z|X_bar>) / sqrt(2), or |X> when X is self conjugate"""
        if det.is_self_conjugate():
            return [(det, 1.0)]
        return [(det, 1 / np.sqrt(2)), (det.swap(), system.z / np.sqrt(2))]

    def adapted_elem(self, system, det_i, det_j):
        return sum(
            a * b * system.get_hamiltonian_elem(det_a, det_b)
            for det_a, a in self.time_reversal_adapted(system, det_i)
            for det_b, b in self.time_reversal_adapted(system, det_j)
        )

    def test_time_reversal(self):
        integrals = random_integrals(self.n_orbs, self.orb_sym, seed=6)
        for z in (1, -1):
            system = make_system(integrals, n_up=2, n_dn=2, time_sym=True, z=z)
            for det in (system.dets[0], Determinant.from_orbs((0, 2), (0, 3))):
                emitted = list(system.find_connected_dets(det))
                connected = dict(emitted)
                self.assertEqual(len(emitted), len(connected))
                for det_j in connected:
                    self.assertLessEqual(det_j.up, det_j.dn)
                    self.assertNotEqual(det_j, det)
                    if z < 0:
                        self.assertNotEqual(det_j.up, det_j.dn)

                for det_j in all_dets(self.n_orbs, 2, 2):
                    if det_j.up > det_j.dn or det_j in (det, det.swap()):
                        continue
                    if det_j.is_self_conjugate() and z < 0:
                        continue
                    expected = self.adapted_elem(system, det, det_j)
                    if abs(expected) > 1e-10:
                        self.assertIn(det_j, connected)
                    self.assertAlmostEqual(connected.get(det_j, 0.0), expected)

    def test_time_reversal_pairs_are_summed(self):
        integrals = random_integrals(self.n_orbs, self.orb_sym, seed=7)
        plain = make_system(integrals, n_up=2, n_dn=2)
        folded = make_system(integrals, n_up=2, n_dn=2, time_sym=True, z=1)
        det = folded.dets[0]
        reference = dict(plain.find_connected_dets(det))
        emitted = dict(folded.find_connected_dets(det))
        self.assertTrue(any(not det_j.is_self_conjugate() for det_j in emitted))
        for det_j, H in emitted.items():
            if det_j.is_self_conjugate():
                self.assertAlmostEqual(H, reference[det_j])
            else:
                # Self conjugate reference, both partners add up
                self.assertAlmostEqual(H, np.sqrt(2) * reference[det_j])


class Test_Minimal(Timing, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.system = make_system(h2_like_integrals(), point_group="None", n_up=1, n_dn=1)

    def test_setup(self):
        system = self.system
        self.assertEqual(system.n_orbs, 2)
        self.assertEqual(system.result.get("n_elecs"), 2)
        self.assertEqual(system.dets, [Determinant.from_orbs((0,), (0,))])
        self.assertEqual(system.coefs, [1.0])
        self.assertAlmostEqual(system.energy_var, 0.7 - 2 * 1.25 + 0.67)

    def test_queue(self):
        queue, n = self.system.hci_queue, self.system.n_orbs
        self.assertEqual(queue.get(0, 1), [])
        # Only the exchange integral (01|01) couples two electrons in two orbitals
        expected = {
            (0, n): [Hrs(0.18, 1, 1 + n)],
            (0, 1 + n): [Hrs(0.18, 1, n)],
            (1, n): [Hrs(0.18, 0, 1 + n)],
            (1, 1 + n): [Hrs(0.18, 0, n)],
        }
        self.assertEqual(set(queue.queue), {compound_idx2(p, q) for p, q in expected})
        for (p, q), bucket in expected.items():
            self.assertEqual(queue.get(p, q), bucket)
        self.assertEqual(queue.n_entries, 4)
        self.assertAlmostEqual(queue.max_hci_queue_elem, 0.18)

    def test_connected(self):
        det = self.system.dets[0]
        emitted = list(self.system.find_connected_dets(det, eps_min=0.0, eps_max=float("inf")))
        target = Determinant.from_orbs((1,), (1,))
        self.assertEqual([det_j for det_j, _ in emitted], [target])
        self.assertAlmostEqual(emitted[0][1], self.system.get_two_body_double(det, target))
        self.assertAlmostEqual(emitted[0][1], 0.18)
        self.assertEqual(list(self.system.find_connected_dets(det, eps_min=0.2)), [])


class Test_Hamiltonian_generator(Timing, unittest.TestCase):
    def setUp(self):
        super().setUp()
        integrals = random_integrals(4, [1, 1, 2, 1], seed=8)
        self.hamiltonian = Hamiltonian(integrals)
        self.psi = list(all_dets(4, 2, 1))
        self.lewis = Hamiltonian_generator(Execution_context(), self.hamiltonian, self.psi)

    @property
    def H(self):
        return np.array([[self.hamiltonian.H_ij(det_i, det_j) for det_j in self.psi] for det_i in self.psi])

    def test_matrix_product(self):
        rng = np.random.default_rng(0)
        v = rng.standard_normal(len(self.psi))
        np.testing.assert_allclose(self.lewis.matrix_product(v), self.H @ v, atol=1e-12)
        v = v + 1j * rng.standard_normal(len(self.psi))
        np.testing.assert_allclose(self.lewis.matrix_product(v), self.H @ v, atol=1e-12)

    def test_energy(self):
        c = np.random.default_rng(1).standard_normal(len(self.psi))
        self.assertAlmostEqual(self.lewis.E(c), c @ self.H @ c / (c @ c))
        lewis = Hamiltonian_generator(Execution_context(), self.hamiltonian, self.psi[:1])
        self.assertAlmostEqual(lewis.E([2.0]), self.hamiltonian.H_ii(self.psi[0]))


class Test_Green(Timing, unittest.TestCase):
    def test_cocg_converges(self):
        rng = np.random.default_rng(2)
        H = 0.05 * rng.standard_normal((4, 4))
        H = H + H.T
        A = (5.0 + 1.0j) * np.eye(4) - H
        b = rng.standard_normal(4)
        x0 = np.full(4, 0.5, dtype=complex)
        x, residuals = cocg(lambda v: A @ v, b, x0, print_fn=lambda s: None)
        np.testing.assert_allclose(A @ x, b, atol=1e-9)
        self.assertLessEqual(residuals[-1], 1e-10)
        self.assertLessEqual(len(residuals) - 1, 100)
        self.assertLess(residuals[1], residuals[0])
        self.assertLess(residuals[2], residuals[1])

    def test_cocg_iteration_cap(self):
        rng = np.random.default_rng(3)
        A = np.diag([1.0, 2.0, 3.0, 4.0]) + 0.5j * np.eye(4)
        b = rng.standard_normal(4)
        with self.assertRaises(SolverNotConvergedError) as cm:
            cocg(lambda v: A @ v, b, np.zeros(4, dtype=complex), max_iter=1, print_fn=lambda s: None)
        self.assertEqual(cm.exception.n_iter, 1)

    def one_orbital(self):
        integrals = Integrals(n_orbs=1, n_elecs=1)
        integrals.set_1b(0, 0, -1.0)
        integrals.set_2b(0, 0, 0, 0, 0.5)
        hamiltonian = Hamiltonian(integrals)
        det = Determinant.from_orbs((0,), ())
        wf = Variational_wavefunction([det], [1.0], 1, hamiltonian.H_ii(det))
        return wf, hamiltonian

    def test_one_orbital(self):
        wf, hamiltonian = self.one_orbital()
        self.assertAlmostEqual(wf.energy_var, -1.0)
        with tempfile.TemporaryDirectory() as tmpdir:
            g = Green(Execution_context(), wf, hamiltonian, w=1.0, n=1.0)
            G = quiet(g.run, tmpdir)
            self.assertEqual(g.pdets, [Determinant.from_orbs((0,), (0,))])
            # 1 / (w + E_var + i n - H_00), the creation sign cancels out
            expected = 1.0 / (1.0 + (-1.0) + 1.0j - (-1.5))
            self.assertAlmostEqual(G[1, 1], expected)
            for i, j in ((0, 0), (0, 1), (1, 0)):
                self.assertAlmostEqual(G[i, j], 0.0)

            self.assertEqual(os.path.basename(g.filename), "green_1.00e+00_1.00e+00i.csv")
            with open(g.filename) as f:
                lines = f.read().splitlines()
        self.assertEqual(lines[0], "i,j,G")
        self.assertEqual(len(lines), 5)
        values = {}
        for line in lines[1:]:
            i, j, value = line.split(",")
            self.assertTrue(value.endswith("j"))
            values[(int(i), int(j))] = complex(value)
        self.assertEqual(sorted(values), [(0, 0), (0, 1), (1, 0), (1, 1)])
        self.assertAlmostEqual(values[(1, 1)], expected, places=5)

    def test_against_dense_resolvent(self):
        integrals = random_integrals(3, [1, 1, 1], seed=9)
        hamiltonian = Hamiltonian(integrals)
        dets = [Determinant.from_orbs((0,), (0,)), Determinant.from_orbs((1,), (1,)), Determinant.from_orbs((0,), (2,))]
        coefs = [0.9, -0.3, 0.1]
        wf = Variational_wavefunction(dets, coefs, 3, energy_var=-0.5)
        with tempfile.TemporaryDirectory() as tmpdir:
            g = Green(Execution_context(), wf, hamiltonian, w=0.5, n=0.8)
            G = quiet(g.run, tmpdir)

        H = np.array([[hamiltonian.H_ij(a, b) for b in g.pdets] for a in g.pdets])
        A = (0.5 - 0.5 + 0.8j) * np.eye(g.n_pdets) - H
        B = np.array([g.construct_b(j) for j in range(6)]).T
        np.testing.assert_allclose(G, B.T @ np.linalg.solve(A, B), atol=1e-8)
        for residuals in g.residuals.values():
            self.assertLessEqual(residuals[-1], 1e-10)


class Test_IO(Timing, unittest.TestCase):
    fcidump = "\n".join(
        [
            " &FCI NORB=  3,NELEC=  2,MS2=0,",
            "  ORBSYM=1,1,5,",
            "  ISYM=1,",
            " &END",
            "  0.5000000000000000D+00   1   1   1   1",
            "  0.2500000000000000E+00   2   1   3   3",
            " -0.1250000000000000E+01   1   1   0   0",
            "  0.1000000000000000E+00   2   1   0   0",
            "  0.7000000000000000E+00   0   0   0   0",
            "",
        ]
    )

    def check(self, integrals):
        self.assertEqual(integrals.n_orbs, 3)
        self.assertEqual(integrals.n_elecs, 2)
        self.assertEqual(integrals.orb_sym, [1, 1, 5])
        self.assertAlmostEqual(integrals.core_energy, 0.7)
        self.assertAlmostEqual(integrals.get_2b(0, 0, 0, 0), 0.5)
        for p, q, r, s in compound_idx4_reverse_all(compound_idx4(1, 0, 2, 2)):
            self.assertAlmostEqual(integrals.get_2b(p, q, r, s), 0.25)
        self.assertEqual(integrals.get_2b(0, 2, 0, 2), 0.0)
        self.assertAlmostEqual(integrals.get_1b(0, 0), -1.25)
        self.assertAlmostEqual(integrals.get_1b(0, 1), 0.1)
        self.assertAlmostEqual(integrals.get_1b(1, 0), 0.1)

    def test_load_integrals(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "FCIDUMP")
            with open(path, "w") as f:
                f.write(self.fcidump)
            self.check(load_integrals(Execution_context(), path))

            path = os.path.join(tmpdir, "FCIDUMP.gz")
            with gzip.open(path, "wt") as f:
                f.write(self.fcidump)
            self.check(load_integrals(Execution_context(), path))

    def test_missing_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(FileNotFoundError):
                load_integrals(Execution_context(), os.path.join(tmpdir, "nope"))

    def test_load_wf(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "psi.wf")
            with open(path, "w") as f:
                f.write("1.0 ++-- +---\n-1.0 +-+- ++--\n")
            psi_coef, psi_det = load_wf(Execution_context(), path)
        self.assertEqual(psi_det, [Determinant.from_orbs((0, 1), (0,)), Determinant.from_orbs((0, 2), (0, 1))])
        np.testing.assert_allclose(psi_coef, [np.sqrt(0.5), -np.sqrt(0.5)])

    def test_config(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "config.json")
            with open(path, "w") as f:
                json.dump({"n_up": 3, "chem": {"point_group": "D2h"}, "w_green": 0.5}, f)
            config = Config.load(path)
        self.assertEqual(config.get("n_up"), 3)
        self.assertEqual(config.get("chem.point_group"), "D2h")
        self.assertEqual(config.get("w_green", 1.0), 0.5)
        self.assertEqual(config.get("n_green", 1.0), 1.0)
        with self.assertRaises(KeyError):
            config.get("n_dn")
        config.set("chem.n_dn", 2)
        self.assertEqual(config.get("chem.n_dn"), 2)

    def test_result(self):
        result = Result()
        result.put("n_elecs", 4)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "result.json")
            result.dump(Execution_context(), path)
            with open(path) as f:
                self.assertEqual(json.load(f), {"n_elecs": 4})


class Test_Timer(Timing, unittest.TestCase):
    def test_sections(self):
        ctx = Execution_context()
        out = _io.StringIO()
        with redirect_stdout(out):
            timer = ctx.timer
            with timer.section("setup"):
                with timer.section("load integrals"):
                    self.assertEqual([event for event, _ in timer.start_times], ["setup", "load integrals"])
                timer.checkpoint("orb #1/2")
            with self.assertRaises(RuntimeError):
                with timer.section("failing"):
                    raise RuntimeError
        self.assertEqual(timer.start_times, [])
        text = out.getvalue()
        self.assertIn("[START]", text)
        self.assertIn("setup >> load integrals", text)
        self.assertIn("[=END=]", text)
        self.assertIn("orb #1/2", text)


if __name__ == "__main__":
    try:
        sys.argv.remove("--profiling")
    except ValueError:
        PROFILING = False
    else:
        PROFILING = True
    unittest.main(failfast=True, verbosity=0)
