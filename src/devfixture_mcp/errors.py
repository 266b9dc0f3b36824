"""
Error taxonomy for the device fixture lifecycle.

Four families, each with a different meaning for the caller:

- PreconditionError: input or host state is wrong, nothing was changed, do not retry.
- OperationError: a host command failed; the tool output is preserved in ``output``.
- TimingError: a bounded wait ran out while the kernel was still settling.
  Retrying the whole teardown later is reasonable.
- VerificationError: a post-condition check failed after the operation reported
  success. Always fatal, data safety is at risk.
"""

from typing import Optional


class FixtureError(RuntimeError):
    """Base class for all device fixture failures."""

    def __init__(self, message: str, output: str = "", resource=None):
        super().__init__(message)
        self.message = message
        self.output = output or ""
        # RegistryEntry that failed to clean up (set by the teardown engine)
        self.resource = resource

    def __str__(self) -> str:
        text = self.message
        if self.output:
            text += f"\n{self.output.strip()}"
        return text


# Precondition failures


class PreconditionError(FixtureError):
    """Caller input or environment is wrong; no host state was mutated."""


class NotABlockDevice(PreconditionError):
    def __init__(self, path: str):
        super().__init__(f"{path or '<empty>'} is not a block device")
        self.path = path


class AlreadyEncrypted(PreconditionError):
    def __init__(self, path: str):
        super().__init__(f"{path} is already a LUKS container")
        self.path = path


class LabelInUse(PreconditionError):
    def __init__(self, label: str):
        super().__init__(f"Device-mapper name '{label}' is already in use")
        self.label = label


class VGExists(PreconditionError):
    def __init__(self, vg_name: str):
        super().__init__(f"Volume group {vg_name} already exists")
        self.vg_name = vg_name


class LVExists(PreconditionError):
    def __init__(self, lv_name: str):
        super().__init__(f"Logical volume {lv_name} already exists")
        self.lv_name = lv_name


class NoVolume(PreconditionError):
    def __init__(self):
        super().__init__("No LVM volume found. Cannot format filesystem.")


class InvalidSize(PreconditionError):
    def __init__(self, size: str):
        super().__init__(f"Invalid size format: {size}. Use format like '10G', '512M', or '1024K'")
        self.size = size


# Operation failures


class OperationError(FixtureError):
    """A host command ran and failed."""


class CommandNotFound(OperationError):
    pass


class LoopSetupFailed(OperationError):
    pass


class LuksFormatFailed(OperationError):
    pass


class LuksOpenFailed(OperationError):
    pass


class LvmSetupFailed(OperationError):
    def __init__(self, step: str, message: str, output: str = ""):
        super().__init__(message, output)
        self.step = step


class FormatFailed(OperationError):
    def __init__(self, fs_type: str, target: str, output: str = ""):
        super().__init__(f"Failed to format {target} as {fs_type}", output)
        self.fs_type = fs_type
        self.target = target


class MountpointCreateFailed(OperationError):
    def __init__(self, mount_point: str, output: str = ""):
        super().__init__(f"Failed to create mountpoint: {mount_point}", output)
        self.mount_point = mount_point


class MountFailed(OperationError):
    def __init__(self, device: str, mount_point: str, output: str = ""):
        super().__init__(f"Failed to mount {device} at {mount_point}", output)
        self.device = device
        self.mount_point = mount_point


# Timing failures


class TimingError(FixtureError):
    """A bounded wait for kernel state ran out of attempts."""


class PollTimeout(TimingError):
    pass


class CommandTimeout(TimingError):
    def __init__(self, cmd, timeout: float, output: str = ""):
        super().__init__(f"Command timed out after {timeout:.1f}s: {' '.join(cmd)}", output)
        self.cmd = list(cmd)
        self.timeout = timeout


class UnmountTimeout(TimingError):
    pass


class LuksCloseTimeout(TimingError):
    pass


# Verification failures


class VerificationError(FixtureError):
    """Post-condition check failed after an operation reported success."""


class LuksEraseVerificationFailed(VerificationError):
    pass


class DeviceNotClean(VerificationError):
    pass


class ImageCleanupFailed(VerificationError):
    pass


def describe_failure(error: FixtureError) -> str:
    """One-line summary naming the failed resource, for logs and tool output."""
    kind = type(error).__name__
    resource: Optional[object] = getattr(error, "resource", None)
    if resource is not None:
        return f"{kind} while removing {resource}: {error.message}"
    return f"{kind}: {error.message}"
