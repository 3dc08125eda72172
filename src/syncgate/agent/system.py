from __future__ import annotations

import json
import os
import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import Any

COMMAND_TIMEOUT_SECONDS = 120


def write_spec_file(root: Path, name: str, payload: dict[str, Any]) -> Path:
    """Atomically write `payload` as JSON to `root/name`; `name` may not leave `root`."""
    base = root.resolve()
    target = (base / name).resolve()
    if not target.is_relative_to(base) or target == base:
        raise ValueError(f"spec file escapes {base}: {name}")
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=True, indent=2)
            handle.write("\n")
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return target


def run_command(cmd: str, dry_run: bool, timeout: float = COMMAND_TIMEOUT_SECONDS) -> tuple[bool, str]:
    """Run `cmd` without a shell. Returns `(succeeded, combined output)`."""
    if dry_run:
        return True, f"dry-run: {cmd}"
    argv = shlex.split(cmd)
    try:
        proc = subprocess.run(argv, capture_output=True, text=True, timeout=timeout, check=False)
    except FileNotFoundError:
        return False, f"command not found: {argv[0] if argv else cmd}"
    except subprocess.TimeoutExpired:
        return False, f"command timed out after {timeout}s: {argv[0]}"
    output = "\n".join(part.strip() for part in (proc.stdout, proc.stderr) if part and part.strip())
    return proc.returncode == 0, output


def check_process(name: str) -> tuple[bool, str]:
    binary = Path(name).name
    try:
        proc = subprocess.run(["pgrep", "-x", binary], capture_output=True, text=True, check=False)
    except FileNotFoundError:
        return False, "pgrep not found"
    pids = proc.stdout.split()
    if proc.returncode != 0 or not pids:
        return False, f"process '{binary}' not found"
    return True, f"process '{binary}' running pids={','.join(pids)}"
