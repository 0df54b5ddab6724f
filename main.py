"""Headless DropSense demo on the simulated dispenser rig.

Learns a reference pattern for one actuator from its first drops, then keeps
dispensing and reports how each drop was scored. Adjust the constants below
to experiment with different rig behaviour.
"""

from __future__ import annotations

import argparse
import logging
import tempfile

from core import DispenserRuntime
from daq.simulated_source import SimulatedDispenserRig
from shared.config import DispenserConfig

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

CHANNEL_NAMES = ("GREEN", "BLUE")
ACTUATOR_COUNT = 6
DISPENSES = 12             # Enough to fill the learning phase and score a few drops
MISS_PROBABILITY = 0.15    # Chance a swing releases nothing
DOUBLE_PROBABILITY = 0.05  # Chance two pills fall together
SETTLE_SEC = 0.05          # Simulated servo travel time


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--servo", type=int, default=1, help="servo number (1-based)")
    parser.add_argument("--count", type=int, default=DISPENSES, help="number of pills to dispense")
    parser.add_argument("--storage", default=None, help="learning data directory (default: temporary)")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    storage = args.storage or tempfile.mkdtemp(prefix="dropsense-")
    config = DispenserConfig(
        channel_names=CHANNEL_NAMES,
        actuator_count=ACTUATOR_COUNT,
        storage_dir=storage,
    )
    rig = SimulatedDispenserRig(
        CHANNEL_NAMES,
        ACTUATOR_COUNT,
        settle_sec=SETTLE_SEC,
        miss_probability=MISS_PROBABILITY,
        double_probability=DOUBLE_PROBABILITY,
        seed=args.seed,
    )
    index = args.servo - 1

    runtime = DispenserRuntime(rig.sensors, rig.servos, config)
    with runtime:
        dispensed = 0
        for _ in range(args.count):
            if runtime.dispense(index):
                dispensed += 1
        runtime.analysis_report(index)
    logging.getLogger(__name__).info(
        "Dispensed %d/%d pills; learning data in %s", dispensed, args.count, storage
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
