import logging
import os
import signal
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[2]))

from simulators.field_node_sim.lib.controller import NodeController
from simulators.field_node_sim.lib.mqtt_bridge import CommandChannel

LOG = logging.getLogger("field_node_sim.app")

CONFIG_FILE = Path(
    os.getenv(
        "FIELD_NODE_CONFIG",
        Path(__file__).resolve().parent / "config.ini",
    )
)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    controller = NodeController.from_config(str(CONFIG_FILE))
    channel = CommandChannel(controller.authority, str(CONFIG_FILE))
    channel.read_config()

    def _sig(sig, frame):
        LOG.info("Signal %s received, shutting down", sig)
        controller.stop()

    signal.signal(signal.SIGINT, _sig)
    signal.signal(signal.SIGTERM, _sig)

    channel.start()
    try:
        controller.run()
    finally:
        channel.stop()
        if controller.uplink is not None:
            controller.uplink.close()


if __name__ == "__main__":
    main()
