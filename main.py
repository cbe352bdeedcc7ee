"""
Burgers solver - entry point for the fixed adaptive run.

Usage:
    uv run python main.py
    uv run python main.py dt=0.01 end_time=0.5 max_level=5
"""

import logging
import sys
from pathlib import Path

import hydra
from hydra.core.hydra_config import HydraConfig
from omegaconf import DictConfig, OmegaConf

sys.path.insert(0, str(Path(__file__).parent / "src"))

from burgers import run_and_report  # noqa: E402

log = logging.getLogger(__name__)


@hydra.main(config_path="conf", config_name="config", version_base=None)
def main(cfg: DictConfig) -> None:
    output_dir = Path(HydraConfig.get().runtime.output_dir)
    log.info(f"Solving problem in 2 space dimensions: {cfg.get('name', 'burgers')}, output in {output_dir}")

    # Parameters are built and validated inside the reported region
    config = OmegaConf.to_container(cfg, resolve=True)
    sys.exit(run_and_report(output_dir=output_dir, config=config))


if __name__ == "__main__":
    main()
