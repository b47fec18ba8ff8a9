"""Shared test data and utilities: a policy-compliant password, mouse telemetry traces
and a loader for the operator scripts."""

import importlib.util
import random
from pathlib import Path

STRONG_PASSWORD = "Sup3r-Secret!"

SCRIPTS_DIR = Path(__file__).resolve().parent.parent / "scripts"


def scripted_trace(count=32):
    """A cursor gliding along a line at constant speed and cadence."""
    return {
        "movements": [
            {"type": "move", "x": i * 10, "y": 0, "timestamp": i * 10} for i in range(count)
        ]
    }


def human_trace(seed=7, count=40):
    rng = random.Random(seed)
    events = []
    x, y, t = 100.0, 100.0, 0.0
    for _ in range(count):
        x += rng.uniform(-40, 40)
        y += rng.uniform(-40, 40)
        t += rng.uniform(5, 60)
        events.append({"type": "move", "x": x, "y": y, "timestamp": t})
    events.append({"type": "click", "x": x, "y": y, "timestamp": t + 120})
    events.append({"type": "keydown", "timestamp": t + 400})
    return {"movements": events}


def load_script(name):
    """Import a module from scripts/ by file path."""
    path = SCRIPTS_DIR / f"{name}.py"
    spec = importlib.util.spec_from_file_location(f"scripts_{name}", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module
