#!/usr/bin/env python3
import sys

from qhci.drivers import Chem_system, Hamiltonian_generator
from qhci.green import Green, Variational_wavefunction
from qhci.io import Config, Result, load_wf
from qhci.parallel import Execution_context

if __name__ == "__main__":
    if len(sys.argv) != 2:
        sys.exit(f"usage: {sys.argv[0]} <config.json>")
    config = Config.load(sys.argv[1])

    ctx = Execution_context()
    result = Result()
    system = Chem_system(ctx, config, result).setup()
    result.put("max_hci_queue_elem", system.max_hci_queue_elem)
    result.put("n_hci_queue_entries", system.hci_queue.n_entries)

    wf_path = config.get("wf_file", None)
    if wf_path is not None:
        # Load wave function
        system.coefs, system.dets = load_wf(ctx, wf_path)
        with ctx.timer.section("variational energy"):
            lewis = Hamiltonian_generator(ctx, system.hamiltonian, system.dets)
            system.energy_var = lewis.E(system.coefs)
    ctx.print_master(f"N_det: {len(system.dets)}, E {system.energy_var}")
    result.put("energy_var", system.energy_var)

    if config.get("green", False):
        with ctx.timer.section("green"):
            wf = Variational_wavefunction(
                system.dets, system.coefs, system.n_orbs, system.energy_var
            )
            green = Green(
                ctx,
                wf,
                system.hamiltonian,
                w=config.get("w_green", 1.0),
                n=config.get("n_green", 1.0),
                tol=config.get("green_tol", 1.0e-10),
                max_iter=config.get("green_max_iter", 100),
            )
            green.run()
        result.put("green_file", green.filename)

    result.dump(ctx, config.get("result_file", "result.json"))
