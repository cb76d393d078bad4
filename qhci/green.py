from dataclasses import dataclass
from typing import Callable, Dict, List, Protocol, Tuple

import numpy as np

from qhci.drivers import Hamiltonian, Hamiltonian_generator, PhaseIdx
from qhci.fundamental_types import (
    Determinant,
    Energy,
    Psi_coef,
    Psi_det,
    SolverNotConvergedError,
)
from qhci.io import write_green
from qhci.parallel import Execution_context

#  _    _                  __                  _   _
# | |  | |                / _|                | | (_)
# | |  | | __ ___   _____| |_ _   _ _ __   ___| |_ _  ___  _ __
# | |/\| |/ _` \ \ / / _ \  _| | | | '_ \ / __| __| |/ _ \| '_ \
# \  /\  / (_| |\ V /  __/ | | |_| | | | | (__| |_| | (_) | | | |
#  \/  \/ \__,_| \_/ \___|_|  \__,_|_| |_|\___|\__|_|\___/|_| |_|
#


class Wavefunction_source(Protocol):
    """What the Green's function solver needs from a system"""

    dets: Psi_det
    coefs: Psi_coef
    n_orbs: int
    energy_var: Energy


@dataclass
class Variational_wavefunction(object):
    """A reference wave function and its variational energy"""

    dets: Psi_det
    coefs: Psi_coef
    n_orbs: int
    energy_var: Energy = 0.0


#   _____ _____ _____ _____
#  /  __ \  _  /  __ \  __ \
#  | /  \/ | | | /  \/ |  \/
#  | |   | | | | |   | | __
#  | \__/\ \_/ / \__/\ |_\ \
#   \____/\___/ \____/\____/
#


def cocg(
    apply_A: Callable[[np.ndarray], np.ndarray],
    b: np.ndarray,
    x0: np.ndarray,
    tol: float = 1.0e-10,
    max_iter: int = 100,
    print_fn: Callable[[str], None] = print,
) -> Tuple[np.ndarray, List[float]]:
    """Conjugate orthogonal conjugate gradients for a complex symmetric A (A == A.T).
    Same recursion as CG, with the unconjugated bilinear form x.T y.

    Returns the solution and the history of the residual 2-norms.
    Raises SolverNotConvergedError past `max_iter` iterations.

    >>> A = np.array([[4 + 1j, 1], [1, 3 + 1j]])
    >>> x, residuals = cocg(lambda v: A @ v, np.array([1.0, 2.0]), np.zeros(2, dtype=complex), print_fn=lambda s: None)
    >>> bool(np.allclose(A @ x, [1.0, 2.0])), len(residuals) <= 3
    (True, True)
    """
    x = np.array(x0, dtype="complex128")
    r = b - apply_A(x)
    p = r.copy()
    rTr = np.dot(r, r)
    residuals = [float(np.linalg.norm(r))]

    n_iter = 0
    while residuals[-1] > tol:
        if n_iter >= max_iter:
            raise SolverNotConvergedError(
                f"cocg does not converge in {max_iter} iterations: r = {residuals[-1]:g}",
                n_iter=n_iter,
                residual=residuals[-1],
            )
        Ap = apply_A(p)
        pTAp = np.dot(p, Ap)
        if pTAp == 0.0:
            raise SolverNotConvergedError(
                f"cocg breakdown at iteration {n_iter}: r = {residuals[-1]:g}",
                n_iter=n_iter,
                residual=residuals[-1],
            )
        a = rTr / pTAp
        x += a * p
        r -= a * Ap
        rTr_new = np.dot(r, r)
        p = r + (rTr_new / rTr) * p
        rTr = rTr_new
        residuals.append(float(np.linalg.norm(r)))
        n_iter += 1
        if n_iter % 10 == 0:
            print_fn(f"Iteration {n_iter}: r = {residuals[-1]:g}")
    print_fn(f"Final iteration {n_iter}: r = {residuals[-1]:g}")
    return x, residuals


#   _____
#  |  __ \
#  | |  \/_ __ ___  ___ _ __
#  | | __| '__/ _ \/ _ \ '_ \
#  | |_\ \ | |  __/  __/ | | |
#   \____/_|  \___|\___|_| |_|
#


class Green(object):
    """One-particle Green's function (particle addition part)

        G[i, j] = <b_i| (w + E_var + i n - H)^-1 |b_j>,  b_j = a^\\dagger_j |psi>

    computed in the basis of every determinant of psi with one electron added.
    Spin-orbitals 0..n_orbs-1 are up, n_orbs..2 n_orbs-1 are dn.
    """

    def __init__(
        self,
        ctx: Execution_context,
        system: Wavefunction_source,
        hamiltonian: Hamiltonian,
        w: float = 1.0,
        n: float = 1.0,
        tol: float = 1.0e-10,
        max_iter: int = 100,
    ):
        self.ctx = ctx
        self.system = system
        self.hamiltonian = hamiltonian
        self.w = w
        self.n = n
        self.tol = tol
        self.max_iter = max_iter

    def run(self, output_dir: str = ".") -> np.ndarray:
        # Store dets and coefs.
        self.dets_store = list(self.system.dets)
        self.coefs_store = list(self.system.coefs)
        self.n_dets = len(self.dets_store)
        self.n_orbs = self.system.n_orbs

        self.construct_pdets()
        self.green_ham()

        n_spin_orbs = 2 * self.n_orbs
        self.G = np.zeros((n_spin_orbs, n_spin_orbs), dtype="complex128")
        self.residuals: Dict[int, List[float]] = {}
        for j in range(n_spin_orbs):
            self.ctx.timer.checkpoint(f"orb #{j + 1}/{n_spin_orbs}")
            # Iteratively get A^{-1} b_j
            x = self.solve(self.construct_b(j), j)
            for i in range(n_spin_orbs):
                self.G[i, j] = np.vdot(self.construct_b(i), x)

        self.output_green(output_dir)
        return self.G

    def construct_pdets(self):
        """Particle-added basis: every reference determinant with one more up or dn electron"""
        self.ctx.print_master(f"n_dets: {self.n_dets}")
        self.ctx.print_master(f"n_orbs: {self.n_orbs}")
        self.pdet_to_id: Dict[Determinant, int] = {}
        self.pdets: Psi_det = []
        for det in self.dets_store:
            for k in range(self.n_orbs):
                for spin, sdet in (("up", det.up), ("dn", det.dn)):
                    if sdet.has(k):
                        continue
                    pdet = self.add_electron(det, k, spin)
                    if pdet not in self.pdet_to_id:
                        self.pdet_to_id[pdet] = len(self.pdets)
                        self.pdets.append(pdet)
        self.n_pdets = len(self.pdets)
        self.ctx.print_master(f"n_pdets: {self.n_pdets}")

    @staticmethod
    def add_electron(det: Determinant, orb: int, spin: str) -> Determinant:
        if spin == "up":
            return Determinant(det.up.set(orb), det.dn)
        return Determinant(det.up, det.dn.set(orb))

    def spin_orbital(self, j: int) -> Tuple[int, str]:
        return (j, "up") if j < self.n_orbs else (j - self.n_orbs, "dn")

    def construct_b(self, j: int) -> np.ndarray:
        """a^\\dagger_j |psi> in the particle-added basis"""
        orb, spin = self.spin_orbital(j)
        b = np.zeros(self.n_pdets, dtype="float")
        for det, coef in zip(self.dets_store, self.coefs_store):
            if coef == 0.0:
                continue
            if (det.up if spin == "up" else det.dn).has(orb):
                continue
            pdet = self.add_electron(det, orb, spin)
            b[self.pdet_to_id[pdet]] += PhaseIdx.creation_phase(det, orb, spin) * coef
        return b

    def green_ham(self):
        """Sparse H in the particle-added basis and the complex shift"""
        self.lewis = Hamiltonian_generator(self.ctx, self.hamiltonian, self.pdets)
        self.offset = complex(self.w + self.system.energy_var, self.n)

    def apply_green(self, x: np.ndarray) -> np.ndarray:
        """(offset - H) x"""
        return self.offset * x - self.lewis.matrix_product(x)

    def solve(self, b: np.ndarray, j: int = 0) -> np.ndarray:
        if not b.any():
            # Orbital occupied in every reference determinant
            self.residuals[j] = [0.0]
            return np.zeros(self.n_pdets, dtype="complex128")
        # Uniform normalized initial guess
        x0 = np.full(self.n_pdets, np.sqrt(1.0 / self.n_pdets), dtype="complex128")
        x, self.residuals[j] = cocg(
            self.apply_green, b, x0, tol=self.tol, max_iter=self.max_iter, print_fn=self.ctx.print_master
        )
        return x

    def output_green(self, output_dir: str = ".") -> str:
        self.filename = write_green(self.ctx, self.G, self.w, self.n, output_dir)
        return self.filename
