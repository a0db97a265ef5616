"""Tests for the error taxonomy."""

import pytest

from clv_engine.errors import ConvergenceError, DomainError, ValidationError


class TestErrors:
    """Test error attributes and hierarchy."""

    def test_validation_error_carries_customer_id(self):
        error = ValidationError("x cannot exceed t_x", customer_id="C7")
        assert isinstance(error, ValueError)
        assert error.customer_id == "C7"
        assert str(error) == "x cannot exceed t_x"

    def test_convergence_error_details_in_message(self):
        error = ConvergenceError(
            "did not converge",
            log_likelihood=-123.5,
            iterations=40,
            parameters={"alpha": 0.5},
            degenerate_strata=[3],
        )
        assert isinstance(error, RuntimeError)
        message = str(error)
        assert "log_likelihood=-123.5" in message
        assert "iterations=40" in message
        assert "alpha=0.5" in message
        assert "degenerate_strata=[3]" in message

    def test_convergence_error_defaults(self):
        error = ConvergenceError("failed")
        assert error.parameters == {}
        assert error.degenerate_strata == ()

    def test_domain_error(self):
        with pytest.raises(ValueError) as exc_info:
            raise DomainError("q must exceed 1", parameter="q", value=0.8)
        assert exc_info.value.parameter == "q"
        assert exc_info.value.value == 0.8
