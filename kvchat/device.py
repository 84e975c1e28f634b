"""
Device selection for the decoder's weights and cache tensors.

The decoder does a handful of tiny matrix-vector products per token, so the
CPU is usually the fastest choice in practice. GPUs are still supported
because everything is plain torch. Persisted cache entries are always moved
to the CPU before they are written, so a cache saved on one device loads on
any other.
"""

import torch


def get_device(requested: str = "auto") -> torch.device:
    """
    Resolve a device string.

    "auto" picks CUDA, then MPS, then CPU. Any other value is passed to
    torch.device unchanged ("cpu", "cuda:1", ...).
    """
    if requested != "auto":
        return torch.device(requested)
    if torch.cuda.is_available():
        return torch.device("cuda")
    elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return torch.device("mps")
    else:
        return torch.device("cpu")


def device_info(device: torch.device) -> str:
    """Human-readable description of the device, printed at session start."""
    lines = [f"Device: {device}"]

    if device.type == "cuda":
        props = torch.cuda.get_device_properties(device)
        lines.append(f"  GPU: {props.name}")
        lines.append(f"  Compute Capability: {props.major}.{props.minor}")
        lines.append(f"  CUDA Version: {torch.version.cuda}")
    elif device.type == "mps":
        lines.append("  Backend: Metal Performance Shaders (Apple Silicon)")
    else:
        lines.append("  Backend: CPU (no GPU acceleration)")

    lines.append(f"  PyTorch Version: {torch.__version__}")

    return "\n".join(lines)
