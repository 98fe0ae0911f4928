"""Demo entrypoint wiring together the ingest engine.

This module intentionally contains a small, end-to-end "smoke test" that:

- Loads configuration from environment.
- Builds the configured document store and starts the ingest facade.
- Sends a stream of synthetic measurements (including re-deliveries) to
  exercise dedup, size-triggered flushing and the final flush on stop.

It is **not** intended to be production orchestration logic; the real producer
is the host's event-subscription layer.
"""

from __future__ import annotations

import logging
import math
import os
import random
import time

from config import load_config
from ingest import IngestFacade
from store import create_store

logger = logging.getLogger(__name__)


def _measurement(path: str, value: float, *, source: str, context: str) -> dict[str, object]:
    """Build a measurement shaped like a host delta value."""
    return {
        "context": context,
        "source": source,
        "path": path,
        "value": value,
    }


def run_demo() -> None:
    """Send a burst of synthetic measurements through the engine, then stop."""
    cfg = load_config()
    store = create_store(cfg.store)
    facade = IngestFacade(store, collection=cfg.store.collection)
    facade.start(cfg.ingest)

    context = os.getenv("DEMO_CONTEXT", "vessels.self")
    count = int(os.getenv("DEMO_MEASUREMENTS", "250"))
    try:
        for i in range(count):
            heading = round(math.radians((i * 7) % 360), 4)
            speed = round(random.uniform(3.0, 7.5), 2)
            facade.send(_measurement("navigation.headingTrue", heading, source="demo.gps", context=context))
            facade.send(_measurement("navigation.speedOverGround", speed, source="demo.gps", context=context))
            if i % 10 == 0:
                # Re-delivery of an identical payload collapses into one buffer slot.
                facade.send(_measurement("navigation.headingTrue", heading, source="demo.gps", context=context))
            time.sleep(0.01)
    finally:
        facade.stop()

    for key, value in facade.degraded_status().items():
        logger.info("%s: %s", key, value)


def main() -> None:
    """CLI entrypoint for running the demo with `python src/main.py`."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_demo()


if __name__ == "__main__":
    main()
