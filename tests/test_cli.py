"""
命令列入口測試
"""

from lattice_flow.__main__ import main


def write_config(tmp_path, body):
    path = tmp_path / "cavity.yaml"
    path.write_text(body, encoding="utf-8")
    return str(path)


class TestMain:
    """命令列測試類"""

    def test_runs_and_writes_snapshot(self, tmp_path, capsys):
        config = write_config(tmp_path, (
            "domain:\n  dimensions: [10, 8]\n"
            "simulation:\n  output_interval: 2\n"))
        out_dir = tmp_path / "out"
        code = main(["--config", config, "--steps", "2", "--execution", "sequential",
                     "--output", str(out_dir)])
        assert code == 0
        assert (out_dir / "macroscopic_000002.txt").exists()
        assert "total_mass" in capsys.readouterr().out

    def test_configuration_error_exit_code(self, tmp_path):
        config = write_config(tmp_path, "collision:\n  tau: 0.3\n")
        assert main(["--config", config, "--steps", "1"]) == 1

    def test_default_lid_speed_long_run(self, tmp_path, capsys):
        """預設頂蓋速度 U=0.1 長時間執行不發散"""
        config = write_config(tmp_path, (
            "domain:\n  dimensions: [32, 32]\n"
            "simulation:\n  output_interval: 500\n"))
        out_dir = tmp_path / "out"
        code = main(["--config", config, "--steps", "1500", "--execution", "parallel",
                     "--output", str(out_dir)])
        assert code == 0
        assert (out_dir / "macroscopic_001500.txt").exists()
        assert "max_velocity" in capsys.readouterr().out
