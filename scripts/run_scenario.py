import os
import signal
import subprocess
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent

# Node configuration to run (overridable via FIELD_NODE_CONFIG env var)
CONFIG_FILE = Path(
    os.getenv("FIELD_NODE_CONFIG", ROOT / "simulators" / "field_node_sim" / "config.ini")
)


def main() -> None:
    env = os.environ.copy()
    env["FIELD_NODE_CONFIG"] = str(CONFIG_FILE.resolve())
    env.setdefault("PYTHONPATH", str(ROOT))

    procs = [
        subprocess.Popen(
            [sys.executable, "-m", "uvicorn", "ground.app.main:app",
             "--host", "0.0.0.0", "--port", env.get("GROUND_PORT", "8000")],
            env=env, cwd=ROOT,
        ),
        subprocess.Popen([sys.executable, "-m", "simulators.field_node_sim.app"], env=env, cwd=ROOT),
    ]

    try:
        while all(p.poll() is None for p in procs):
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        for p in procs:
            if p.poll() is None:
                p.send_signal(signal.SIGINT)
        for p in procs:
            try:
                p.wait(timeout=10)
            except subprocess.TimeoutExpired:
                p.kill()


if __name__ == "__main__":
    main()
