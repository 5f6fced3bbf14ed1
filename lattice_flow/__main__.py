"""
lattice_flow 命令列入口

    python -m lattice_flow --config cavity.yaml --steps 2000 --execution threads
"""

import sys
import logging
import argparse

from .cavity import build_lid_driven_cavity
from .config.config_manager import load_config
from .core.backends.compute_backends import ExecutionStrategyFactory
from .error_handling import CFDError


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Lattice Boltzmann lid-driven cavity")
    parser.add_argument("--config", default=None, help="YAML 設定檔路徑")
    parser.add_argument("--steps", type=int, default=None, help="時間步數 (覆寫設定檔)")
    parser.add_argument("--execution", choices=ExecutionStrategyFactory.NAMES, default=None,
                        help="執行策略")
    parser.add_argument("--output", default=None, help="輸出目錄")
    parser.add_argument("--verbose", action="store_true", help="顯示除錯訊息")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    logger = logging.getLogger("lattice_flow")

    try:
        cfg = load_config(args.config)
        if args.steps is not None:
            cfg.steps = args.steps
        if args.execution is not None:
            cfg.execution = args.execution
        if args.output is not None:
            cfg.output_dir = args.output

        with build_lid_driven_cavity(cfg) as lattice:
            lattice.perform_lbm(cfg.steps,
                                macroscopic_output_interval=cfg.output_interval,
                                checkpoint_interval=cfg.checkpoint_interval,
                                output_dir=cfg.output_dir,
                                stability_interval=cfg.stability_interval)
            summary = lattice.diagnostics.summary()
    except CFDError as e:
        logger.critical(f"❌ 模擬失敗: {e}")
        return 1

    print("=== 模擬摘要 ===")
    for key, value in summary.items():
        print(f"  {key}: {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
