from __future__ import annotations

import os
import logging
from pathlib import Path
from typing import Optional

from edgesim.api import create_app
from edgesim.config import Settings, configure_logging, load_settings
from edgesim.manager import SimulationManager

logger = logging.getLogger(__name__)


def build_manager(settings: Settings) -> SimulationManager:
	"""Create and initialize the manager, seeding nodes on first start."""
	manager = SimulationManager(settings)
	manager.initialize()
	if os.getenv("EDGESIM_AUTO_LOOP", "1") not in ("0", "false", "no"):
		manager.start_cluster_loop(settings.cluster_loop_interval_s)
	else:
		logger.info("Cluster load loop disabled by EDGESIM_AUTO_LOOP")
	return manager


def build_app(settings: Optional[Settings] = None):
	"""Build the Flask app around a fully initialized manager."""
	if settings is None:
		settings_path = os.getenv(
			"EDGESIM_SETTINGS",
			str(Path(__file__).parent / "deploy" / "settings.yaml")
		)
		settings = load_settings(settings_path if os.path.exists(settings_path) else None)
	configure_logging(settings.log_level)

	manager = build_manager(settings)
	logger.info(f"Simulator ready: {len(manager.nodes())} node(s), data in {settings.data_dir}")
	return create_app(manager)


# Build app at module level (for gunicorn)
app = build_app()


if __name__ == "__main__":
	app.run(host="0.0.0.0", port=8080)
