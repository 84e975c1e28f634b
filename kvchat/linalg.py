"""
Linear algebra kernel: the three primitives the decoder is built from.

All operations take and return torch tensors and never modify their inputs.
Shapes are checked explicitly so that a malformed weight or cache surfaces
as a ShapeMismatchError at the call site instead of a broadcast surprise
three layers later.
"""

import torch

from kvchat.errors import ShapeMismatchError


def mat_mul(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    """
    Dense matrix product of two 2-D tensors.

    The decoder only ever multiplies a single row by a weight matrix, so
    vectors are passed as (1, n) matrices: mat_mul(x.unsqueeze(0), W)[0].

    Args:
        a: (rows, inner) tensor.
        b: (inner, cols) tensor.

    Returns:
        (rows, cols) tensor.

    Raises:
        ShapeMismatchError: if either operand is not 2-D or the inner
            dimensions differ.
    """
    if a.dim() != 2 or b.dim() != 2:
        raise ShapeMismatchError(
            f"mat_mul expects 2-D operands, got {tuple(a.shape)} and {tuple(b.shape)}"
        )
    if a.shape[1] != b.shape[0]:
        raise ShapeMismatchError(
            f"mat_mul inner dimensions differ: {tuple(a.shape)} @ {tuple(b.shape)}"
        )
    return a @ b


def softmax(v: torch.Tensor) -> torch.Tensor:
    """
    Numerically stable softmax over the last dimension.

    exp(v - max(v)) keeps the largest exponent at exactly e^0 = 1, so large
    scores cannot overflow and the denominator is always >= 1. A vector of
    identical values comes out uniform without any special case.
    """
    if v.numel() == 0:
        raise ShapeMismatchError("softmax of an empty vector is undefined")
    exps = torch.exp(v - v.max(dim=-1, keepdim=True).values)
    return exps / exps.sum(dim=-1, keepdim=True)


def argmax(v: torch.Tensor) -> int:
    """Index of the largest entry of a 1-D tensor. Ties go to the lowest index."""
    if v.dim() != 1 or v.numel() == 0:
        raise ShapeMismatchError(f"argmax expects a non-empty vector, got {tuple(v.shape)}")
    return int(torch.argmax(v).item())
