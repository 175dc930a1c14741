#!/usr/bin/env python3
"""Cross-platform install script for taskloop.

Usage:
    python install.py          # Production install
    python install.py --dev    # Development install (includes test tools)
"""

import os
import platform
import shutil
import subprocess
import sys

MIN_PYTHON = (3, 11)


def main() -> None:
    if sys.version_info < MIN_PYTHON:
        sys.exit(
            f"Error: Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+ is required. "
            f"You have {sys.version_info.major}.{sys.version_info.minor}."
        )

    dev = "--dev" in sys.argv
    project_dir = os.path.dirname(os.path.abspath(__file__))
    venv_dir = os.path.join(project_dir, ".venv")
    is_windows = platform.system() == "Windows"
    pip = os.path.join(venv_dir, "Scripts" if is_windows else "bin", "pip")

    if not os.path.isdir(venv_dir):
        print("Creating virtual environment...")
        subprocess.check_call([sys.executable, "-m", "venv", venv_dir])

    subprocess.check_call([pip, "install", "--upgrade", "pip"])
    target = ".[dev]" if dev else "."
    print(f"Installing taskloop ({'development' if dev else 'production'})...")
    subprocess.check_call([pip, "install", "-e", target] if dev else [pip, "install", target], cwd=project_dir)

    os.makedirs(os.path.join(project_dir, "data", "agent-files"), exist_ok=True)

    config_path = os.path.join(project_dir, "config.yaml")
    example_path = os.path.join(project_dir, "config.example.yaml")
    if not os.path.exists(config_path) and os.path.exists(example_path):
        shutil.copy(example_path, config_path)
        print("Created config.yaml from config.example.yaml")

    activate_cmd = r".\.venv\Scripts\activate" if is_windows else "source .venv/bin/activate"
    print()
    print("Next steps:")
    print("  1. Set ANTHROPIC_API_KEY (and OPENAI_API_KEY for embeddings) in .env")
    print(f"  2. {activate_cmd}")
    print("  3. taskloop config-check")
    print('  4. taskloop ask "What can you do?"')
    if dev:
        print("  5. pytest")


if __name__ == "__main__":
    main()
