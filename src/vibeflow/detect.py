from __future__ import annotations

from pathlib import Path

from vibeflow.models import Domain, Mode

DOMAIN_TEST_COMMANDS: dict[str, str] = {
    "HARDWARE": "pio test -e native",
    "AI_ROBOT": "pytest",
    "PYTHON_GENERIC": "pytest",
    "WEB": "npm test",
    "GENERIC": "echo 'No tests configured'",
}


def detect_domain(root: Path) -> Domain:
    if (root / "platformio.ini").is_file() or (root / "CMakeLists.txt").is_file():
        return "HARDWARE"
    if (root / "mamba_env.yaml").is_file() or (root / "src" / "ros2").is_dir():
        return "AI_ROBOT"
    if (root / "package.json").is_file() or (root / "next.config.js").is_file():
        return "WEB"
    try:
        if any(entry.suffix == ".py" and entry.is_file() for entry in root.iterdir()):
            return "PYTHON_GENERIC"
    except OSError:
        pass
    return "GENERIC"


def detect_mode(root: Path, index_file: str = "project_index.json") -> Mode:
    if not (root / ".git").exists():
        return "SCRATCH"
    if not (root / index_file).is_file():
        return "INIT_INDEX"
    return "MAINTAIN"


def test_command_for(domain: Domain) -> str:
    return DOMAIN_TEST_COMMANDS.get(domain, DOMAIN_TEST_COMMANDS["GENERIC"])
