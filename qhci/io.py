import glob
import json
import math
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

import numpy as np

from qhci.fundamental_types import (
    Determinant,
    Energy,
    One_electron_integral,
    OrbitalIdx,
    Psi_coef,
    Psi_det,
    Two_electron_integral,
)
from qhci.integral_indexing_utils import compound_idx4
from qhci.parallel import Execution_context

#   _____              __ _
#  /  __ \            / _(_)
#  | /  \/ ___  _ __ | |_ _  __ _
#  | |    / _ \| '_ \|  _| |/ _` |
#  | \__/\ (_) | | | | | | | (_| |
#   \____/\___/|_| |_|_| |_|\__, |
#                            __/ |
#                           |___/

_MISSING = object()


class Config(object):
    """Key-value lookup over a nested dict, with dotted keys

    >>> c = Config({"n_up": 2, "chem": {"point_group": "d2h"}})
    >>> c.get("n_up"), c.get("chem.point_group"), c.get("time_sym", False)
    (2, 'd2h', False)
    >>> c.get("chem.missing")
    Traceback (most recent call last):
        ...
    KeyError: 'chem.missing'
    """

    def __init__(self, data: Dict[str, Any] = None):
        self.data = {} if data is None else data

    @classmethod
    def load(cls, path: str) -> "Config":
        with open(path) as f:
            return cls(json.load(f))

    def get(self, key: str, default=_MISSING):
        node = self.data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                if default is _MISSING:
                    raise KeyError(key)
                return default
            node = node[part]
        return node

    def set(self, key: str, value):
        *parents, last = key.split(".")
        node = self.data
        for part in parents:
            node = node.setdefault(part, {})
        node[last] = value


class Result(object):
    """Named scalar results of a run, dumped as JSON by the master rank"""

    def __init__(self):
        self.data: Dict[str, Any] = {}

    def put(self, key: str, value):
        self.data[key] = value

    def get(self, key: str, default=None):
        return self.data.get(key, default)

    def dump(self, ctx: Execution_context, path: str = "result.json"):
        if ctx.is_master:
            with open(path, "w") as f:
                json.dump(self.data, f, indent=2, sort_keys=True)


#   _____      _ _   _       _ _          _   _
#  |_   _|    (_) | (_)     | (_)        | | (_)
#    | | _ __  _| |_ _  __ _| |_ ______ _| |_ _  ___  _ __
#    | || '_ \| | __| |/ _` | | |_  / _` | __| |/ _ \| '_ \
#   _| || | | | | |_| | (_| | | |/ / (_| | |_| | (_) | | | |
#   \___/_| |_|_|\__|_|\__,_|_|_/___\__,_|\__|_|\___/|_| |_|


@dataclass
class Integrals(object):
    """Hamiltonian integrals over molecular orbitals, chemist notation.
    Only non-zero integrals are stored; missing keys are zero.
    """

    n_orbs: int
    n_elecs: int
    core_energy: Energy = 0.0
    orb_sym: List[int] = field(default_factory=list)
    d_one_e_integral: One_electron_integral = field(default_factory=dict)
    d_two_e_integral: Two_electron_integral = field(default_factory=dict)

    def __post_init__(self):
        if not self.orb_sym:
            self.orb_sym = [1] * self.n_orbs

    def get_1b(self, p: OrbitalIdx, q: OrbitalIdx) -> float:
        return self.d_one_e_integral.get((p, q), 0.0)

    def get_2b(self, p: OrbitalIdx, q: OrbitalIdx, r: OrbitalIdx, s: OrbitalIdx) -> float:
        """(pq|rs)"""
        return self.d_two_e_integral.get(compound_idx4(p, q, r, s), 0.0)

    def set_1b(self, p: OrbitalIdx, q: OrbitalIdx, v: float):
        # One-electron integrals are symmetric (when real, not complex)
        self.d_one_e_integral[(p, q)] = v
        self.d_one_e_integral[(q, p)] = v

    def set_2b(self, p: OrbitalIdx, q: OrbitalIdx, r: OrbitalIdx, s: OrbitalIdx, v: float):
        self.d_two_e_integral[compound_idx4(p, q, r, s)] = v

    def det_hf(self, n_up: int, n_dn: int) -> Determinant:
        """Lowest orbitals filled in each channel
        >>> Integrals(n_orbs=4, n_elecs=3).det_hf(2, 1)
        Determinant(up=Half_determinant((0, 1)), dn=Half_determinant((0,)))
        """
        if max(n_up, n_dn) > self.n_orbs:
            raise ValueError(f"Cannot place {max(n_up, n_dn)} electrons in {self.n_orbs} orbitals")
        return Determinant.from_orbs(range(n_up), range(n_dn))


def _resolve(path: str) -> str:
    matches = glob.glob(path)
    if len(matches) == 1:
        return matches[0]
    elif len(matches) == 0:
        raise FileNotFoundError(f"no matching file: {path}")
    raise ValueError(f"multiple matches for {path}: {' '.join(sorted(matches))}")


def _open(path: str):
    if path.split(".")[-1] == "gz":
        import gzip

        return gzip.open(path, "rt")
    elif path.split(".")[-1] == "bz2":
        import bz2

        return bz2.open(path, "rt")
    return open(path)


def parse_fcidump(lines) -> Integrals:
    """Parse the lines of a FCIDUMP file.

    >>> integrals = parse_fcidump(['&FCI NORB=2,NELEC=2,MS2=0,', ' ORBSYM=1,1,', ' ISYM=1,', '&END',
    ...     '0.5 1 1 1 1', '0.25 1 1 2 2', '-1.25 1 1 0 0', '0.7 0 0 0 0'])
    >>> integrals.n_orbs, integrals.n_elecs, integrals.orb_sym, integrals.core_energy
    (2, 2, [1, 1], 0.7)
    >>> integrals.get_2b(1, 1, 0, 0), integrals.get_2b(0, 1, 0, 1), integrals.get_1b(0, 0)
    (0.25, 0.0, -1.25)
    """
    it = iter(lines)
    header = []
    for line in it:
        header.append(line)
        if re.search(r"&END|^\s*/\s*$", line, re.IGNORECASE):
            break
    else:
        raise ValueError("FCIDUMP header is not terminated by &END")
    header = " ".join(header)

    def header_int(key):
        m = re.search(rf"\b{key}\s*=\s*(-?\d+)", header, re.IGNORECASE)
        if m is None:
            raise ValueError(f"{key} missing from FCIDUMP header")
        return int(m.group(1))

    n_orbs = header_int("NORB")
    n_elecs = header_int("NELEC")
    m = re.search(r"\bORBSYM\s*=\s*((?:\d+\s*,?\s*)+)", header, re.IGNORECASE)
    orb_sym = [int(s) for s in re.findall(r"\d+", m.group(1))][:n_orbs] if m else []

    integrals = Integrals(n_orbs=n_orbs, n_elecs=n_elecs, orb_sym=orb_sym)
    for line in it:
        if not line.strip():
            continue
        v, *idx = line.split()
        # Fortran double precision exponents
        v = float(v.replace("D", "E").replace("d", "e"))
        i, j, k, l = map(int, idx)
        if i == j == k == l == 0:
            integrals.core_energy = v
        elif k == l == 0:
            # `e i 0 0 0` records are orbital energies, not integrals
            if j != 0:
                # index minus one to be consistent with determinant orbital indexing starting at zero
                integrals.set_1b(i - 1, j - 1, v)
        else:
            integrals.set_2b(i - 1, j - 1, k - 1, l - 1, v)
    return integrals


def load_integrals(ctx: Execution_context, fcidump_path: str) -> Integrals:
    """Read all the Hamiltonian integrals from the data file.
    The master rank reads, every rank gets a copy before returning."""
    integrals = None
    if ctx.is_master:
        path = _resolve(fcidump_path)
        # Use an iterator to avoid storing everything in memory twice.
        with _open(path) as f:
            integrals = parse_fcidump(f)
    return ctx.bcast(integrals)


def load_wf(ctx: Execution_context, path_wf: str) -> Tuple[Psi_coef, Psi_det]:
    """Read the input file :
    Representation of the Slater determinants (basis) and
    vector of coefficients in this basis (wave function).
    One determinant per line: `coef +-+--- ++----`, up then dn occupation."""

    def decode_det(str_):
        for i, v in enumerate(str_):
            if v == "+":
                yield i

    def grouper(iterable, n):
        "Collect data into fixed-length chunks or blocks"
        args = [iter(iterable)] * n
        return zip(*args)

    psi_coef, psi_det = [], []
    if ctx.is_master:
        with _open(_resolve(path_wf)) as f:
            data = f.read().split()
        if len(data) % 3:
            raise ValueError(f"{path_wf}: expected (coef, up, dn) triples")
        for (coef, det_i, det_j) in grouper(data, 3):
            psi_coef.append(float(coef))
            psi_det.append(Determinant.from_orbs(decode_det(det_i), decode_det(det_j)))

        # Normalize psi_coef
        norm = math.sqrt(sum(c * c for c in psi_coef))
        psi_coef = [c / norm for c in psi_coef]

    return ctx.bcast(psi_coef), ctx.bcast(psi_det)


#    _
#   / \    _|_ ._    _|_
#   \_/ |_| |_ |_) |_| |_
#              |


def green_filename(w: float, n: float) -> str:
    """
    >>> green_filename(1.0, 0.01)
    'green_1.00e+00_1.00e-02i.csv'
    """
    return f"green_{w:#.2e}_{n:#.2e}i.csv"


def write_green(
    ctx: Execution_context, G: np.ndarray, w: float, n: float, output_dir: str = "."
) -> str:
    """Write the `2 n_orbs x 2 n_orbs` complex matrix G, one `i,j,G` row per element.
    Only the master rank writes; every rank gets the filename back."""
    filename = os.path.join(output_dir, green_filename(w, n))
    if ctx.is_master:
        with open(filename, "w") as f:
            f.write("i,j,G\n")
            for (i, j), g in np.ndenumerate(G):
                f.write(f"{i},{j},{g.real:g}{g.imag:+g}j\n")
        print(f"Green's function saved to: {filename}", flush=True)
    return filename
