"""
Unit tests for the linear algebra kernel.

Tests verify:
  1. mat_mul output shape and identity behavior
  2. mat_mul rejects mismatched or non-2-D operands
  3. softmax is a valid distribution, stable for extreme inputs
  4. argmax breaks ties toward the first index
"""

import sys
import os

import numpy
import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kvchat.errors import ShapeMismatchError
from kvchat.linalg import argmax, mat_mul, softmax


class TestMatMul:

    @pytest.mark.parametrize("rows,inner,cols", [(1, 32, 32), (3, 4, 5), (7, 1, 2)])
    def test_output_shape(self, rows, inner, cols):
        out = mat_mul(torch.randn(rows, inner), torch.randn(inner, cols))
        assert out.shape == (rows, cols)

    def test_identity(self):
        """A @ I == A."""
        a = torch.randn(5, 8)
        assert torch.allclose(mat_mul(a, torch.eye(8)), a, atol=1e-6)

    def test_matches_reference(self):
        a = torch.tensor([[1.0, 2.0], [3.0, 4.0]])
        b = torch.tensor([[5.0, 6.0], [7.0, 8.0]])
        expected = torch.tensor([[19.0, 22.0], [43.0, 50.0]])
        assert torch.equal(mat_mul(a, b), expected)

    def test_inputs_untouched(self):
        a = torch.randn(2, 3)
        b = torch.randn(3, 2)
        a_copy, b_copy = a.clone(), b.clone()
        mat_mul(a, b)
        assert torch.equal(a, a_copy) and torch.equal(b, b_copy)

    def test_inner_dimension_mismatch(self):
        with pytest.raises(ShapeMismatchError):
            mat_mul(torch.randn(2, 3), torch.randn(4, 2))

    def test_rejects_vectors(self):
        """1-D operands must be reshaped to (1, n) by the caller."""
        with pytest.raises(ShapeMismatchError):
            mat_mul(torch.randn(3), torch.randn(3, 2))

    def test_shape_mismatch_is_value_error(self):
        with pytest.raises(ValueError):
            mat_mul(torch.randn(1, 2), torch.randn(3, 1))


class TestSoftmax:

    def test_matches_pytorch(self):
        x = torch.tensor([1.0, 2.0, 3.0, -1.0])
        numpy.testing.assert_allclose(
            softmax(x).numpy(), torch.softmax(x, dim=-1).numpy(), atol=1e-6
        )

    @pytest.mark.parametrize("values", [
        [0.0],
        [1.0, 2.0, 3.0],
        [1000.0, 999.0, 998.0],
        [-1000.0, -1001.0, -1002.5],
        [1e4, 1e4 - 3.0],
    ])
    def test_valid_distribution(self, values):
        p = softmax(torch.tensor(values))
        assert torch.all(p > 0) and torch.all(p <= 1)
        assert abs(p.sum().item() - 1.0) < 1e-6

    def test_no_overflow_on_wide_range(self):
        """Scores 2000 apart underflow to 0 but never produce inf or NaN."""
        p = softmax(torch.tensor([1000.0, -1000.0, 0.0]))
        assert torch.isfinite(p).all()
        assert torch.all(p >= 0) and torch.all(p <= 1)
        assert abs(p.sum().item() - 1.0) < 1e-6
        assert p[0].item() == pytest.approx(1.0)

    def test_equal_scores_are_uniform(self):
        p = softmax(torch.full((4,), 7.5))
        assert torch.allclose(p, torch.full((4,), 0.25))

    def test_empty_vector(self):
        with pytest.raises(ShapeMismatchError):
            softmax(torch.tensor([]))


class TestArgmax:

    def test_picks_largest(self):
        assert argmax(torch.tensor([0.1, 3.0, -2.0])) == 1

    def test_ties_resolve_to_first(self):
        assert argmax(torch.tensor([1.0, 5.0, 5.0, 5.0])) == 1
        assert argmax(torch.zeros(10)) == 0

    def test_rejects_matrix(self):
        with pytest.raises(ShapeMismatchError):
            argmax(torch.zeros(2, 2))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
