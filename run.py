#!/usr/bin/env python3
"""
AuraQuest - One-click launcher (FastAPI + SQLite)

What it does:
- Creates .venv if missing
- Installs the project (pip install -e .) into .venv
- Starts the FastAPI server (uvicorn)
- Or runs the midnight tick once (day rollover)

Usage:
  Double-click: starts server at http://127.0.0.1:8000
  CLI options:
    python run.py --midnight-tick     # run the rollover job once and exit
    python run.py --no-install        # skip pip install
    python run.py --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import argparse
import platform
import subprocess
import sys
import textwrap
import threading
import time
import webbrowser
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent
VENV_DIR = PROJECT_ROOT / ".venv"


def is_windows() -> bool:
    return platform.system().lower().startswith("win")


def venv_python_path() -> Path:
    if is_windows():
        return VENV_DIR / "Scripts" / "python.exe"
    return VENV_DIR / "bin" / "python"


def run(cmd: list[str], *, cwd: Path | None = None, check: bool = True) -> int:
    print("\n> " + " ".join(cmd))
    return subprocess.run(cmd, cwd=str(cwd or PROJECT_ROOT), check=check).returncode


def ensure_project_layout() -> None:
    if not (PROJECT_ROOT / "pyproject.toml").exists():
        raise FileNotFoundError(f"Missing pyproject.toml in {PROJECT_ROOT}")
    if not (PROJECT_ROOT / "auraquest" / "main.py").exists():
        raise FileNotFoundError(f"Missing auraquest/main.py in {PROJECT_ROOT}")


def ensure_venv() -> Path:
    py = venv_python_path()
    if py.exists():
        return py

    print(f"Creating virtual environment at: {VENV_DIR}")
    run([sys.executable, "-m", "venv", str(VENV_DIR)])
    if not py.exists():
        raise RuntimeError(f"Virtualenv created but python not found at: {py}")
    return py


def pip_install(venv_py: Path) -> None:
    print("Upgrading pip...")
    run([str(venv_py), "-m", "pip", "install", "--upgrade", "pip"])
    print("Installing AuraQuest...")
    run([str(venv_py), "-m", "pip", "install", "-e", str(PROJECT_ROOT)])


def start_server(venv_py: Path, host: str, port: int, reload: bool) -> int:
    cmd = [str(venv_py), "-m", "uvicorn", "auraquest.main:app", "--host", host, "--port", str(port)]
    if reload:
        cmd.append("--reload")

    url = f"http://{host if host != '0.0.0.0' else '127.0.0.1'}:{port}"
    print(f"\nStarting server: {url}")
    print("Press Ctrl+C to stop.\n")

    def open_later():
        time.sleep(1.0)
        try:
            webbrowser.open(url)
        except webbrowser.Error:
            pass

    threading.Thread(target=open_later, daemon=True).start()

    return run(cmd, check=False)


def pause_on_exit_if_double_clicked() -> None:
    # A double-clicked console on Windows closes before the error can be read.
    if is_windows() and sys.stdin is not None and sys.stdin.isatty():
        try:
            input("\nPress Enter to close...")
        except EOFError:
            pass


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="AuraQuest Launcher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=textwrap.dedent(
            """
            One-click launcher for AuraQuest.

            Modes:
              (default)        server
              --midnight-tick  day rollover job, once
            """
        ).strip(),
    )

    parser.add_argument("--midnight-tick", action="store_true", help="Run the day rollover job once and exit")
    parser.add_argument("--no-install", action="store_true", help="Skip pip install (assumes .venv is ready)")
    parser.add_argument("--host", default="127.0.0.1", help="Server host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Server port (default: 8000)")
    parser.add_argument("--no-reload", action="store_true", help="Disable uvicorn --reload")

    args = parser.parse_args()

    ensure_project_layout()
    venv_py = ensure_venv()

    if not args.no_install:
        pip_install(venv_py)

    if args.midnight_tick:
        return run([str(venv_py), "-m", "auraquest.jobs.midnight_tick"], check=False)

    return start_server(venv_py, args.host, args.port, not args.no_reload)


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except KeyboardInterrupt:
        print("\nStopped.")
        raise
    except Exception as e:
        print(f"\nERROR: {e}")
        pause_on_exit_if_double_clicked()
        raise
