import subprocess
import sys


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "luapileup", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "luapileup" in cp.stdout
    assert "--pile-expression" in cp.stdout
