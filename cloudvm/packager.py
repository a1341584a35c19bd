"""Provisioning disc image authoring for cloudvm.

NoCloud media is an ISO9660 volume labelled ``cidata`` with Joliet and Rock
Ridge extensions; Azure media is a UDF volume carrying ``ovf-env.xml``.
"""

from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from typing import Dict, List

from cloudvm.constants import AZURE_VOLUME_ID, NOCLOUD_VOLUME_ID
from cloudvm.exceptions import PackagingError
from cloudvm.models import ProvisioningPayload, ProvisioningProtocol
from cloudvm.utils import command_error, log, run

AUTHORING_TOOLS = ("genisoimage", "mkisofs")


def payload_files(payload: ProvisioningPayload, protocol: ProvisioningProtocol) -> Dict[str, str]:
    """Map the protocol's fixed filenames to document contents."""
    if protocol is ProvisioningProtocol.AZURE:
        if payload.ovf_env is None:
            raise PackagingError("Azure provisioning media requires an ovf-env.xml document")
        return {"ovf-env.xml": payload.ovf_env}
    files = {"meta-data": payload.meta_data, "user-data": payload.user_data}
    if payload.network_config is not None:
        files["network-config"] = payload.network_config
    if payload.vendor_data is not None:
        files["vendor-data"] = payload.vendor_data
    return files


def authoring_flags(protocol: ProvisioningProtocol) -> List[str]:
    if protocol is ProvisioningProtocol.AZURE:
        return ["-volid", AZURE_VOLUME_ID, "-udf", "-joliet", "-rock"]
    return ["-volid", NOCLOUD_VOLUME_ID, "-joliet", "-rock"]


def find_authoring_tool() -> str:
    for tool in AUTHORING_TOOLS:
        path = shutil.which(tool)
        if path:
            return path
    raise PackagingError(f"No disc authoring tool found (install one of: {', '.join(AUTHORING_TOOLS)})")


def package_payload(payload: ProvisioningPayload, protocol: ProvisioningProtocol, output: Path) -> Path:
    """Write the payload documents to a scratch directory and build *output* from them."""
    tool = find_authoring_tool()
    files = payload_files(payload, protocol)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.unlink(missing_ok=True)

    with tempfile.TemporaryDirectory(prefix="cloudvm-seed-") as tmpdir:
        tmp = Path(tmpdir)
        for name, content in files.items():
            (tmp / name).write_text(content, encoding="utf-8")
        cmd = [tool, "-output", str(output), *authoring_flags(protocol), *(str(tmp / name) for name in files)]
        try:
            result = run(cmd, check=False)
        except OSError as exc:
            raise PackagingError(f"Cannot run {tool}: {exc}") from exc

    if result.returncode != 0:
        output.unlink(missing_ok=True)
        raise PackagingError(f"{Path(tool).name} failed ({command_error(result)})")
    if not output.exists():
        raise PackagingError(f"{Path(tool).name} reported success but {output} was not created")
    log("SUCCESS", f"Provisioning media written to {output} ({', '.join(files)})")
    return output
