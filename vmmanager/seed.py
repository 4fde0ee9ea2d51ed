"""Seed ISO packaging for the cloud-init NoCloud datasource."""

from __future__ import annotations

import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional

from vmmanager.constants import SEED_TOOLS
from vmmanager.exceptions import ProvisioningError, ToolingError
from vmmanager.models import ProvisioningPayload
from vmmanager.utils import ensure_directory, find_tool, log, run


def seed_command(tool: str, output: Path, user_data: Path, meta_data: Path) -> List[str]:
    if tool == "cloud-localds":
        return [tool, str(output), str(user_data), str(meta_data)]
    # genisoimage and mkisofs share the same flags
    return [
        tool,
        "-output",
        str(output),
        "-volid",
        "cidata",
        "-joliet",
        "-rock",
        str(user_data),
        str(meta_data),
    ]


def pack_seed(payload: ProvisioningPayload, output: Path, tool: Optional[str] = None) -> Path:
    """Write ``payload`` into a seed image at ``output``.

    Scratch files live in a temporary directory that is removed whether or
    not packing succeeds.
    """
    tool = tool or find_tool(*SEED_TOOLS)
    if tool is None:
        raise ToolingError(
            f"No seed image builder found. Install one of: {', '.join(SEED_TOOLS)} "
            "(cloud-image-utils or genisoimage)"
        )
    ensure_directory(output.parent)
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        user_data = tmp / "user-data"
        meta_data = tmp / "meta-data"
        user_data.write_text(payload.user_data, encoding="utf-8")
        meta_data.write_text(payload.meta_data, encoding="utf-8")
        try:
            run(seed_command(tool, output, user_data, meta_data), capture_output=True)
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip()
            raise ProvisioningError(f"{tool} failed to create {output}: {detail or exc}") from exc
    log("SUCCESS", f"Cloud-init seed created with {tool}: {output}")
    return output
