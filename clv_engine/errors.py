"""Exception taxonomy shared by the CLV engine.

Three failure classes are distinguished so callers can react differently:

- :class:`ValidationError` - inputs or sufficient statistics violate an
  invariant (e.g. ``x > t_x``). Raised immediately, never corrected.
- :class:`ConvergenceError` - a maximum-likelihood fit did not converge,
  produced a non-finite likelihood, or exhausted its iteration/time budget.
- :class:`DomainError` - fitted parameters fall outside the range where a
  derived quantity exists (e.g. population mean spend requires ``q > 1``).
"""

from __future__ import annotations

from typing import Mapping, Optional, Sequence


class ValidationError(ValueError):
    """Malformed input data or sufficient statistics."""

    def __init__(self, message: str, customer_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.customer_id = customer_id


class ConvergenceError(RuntimeError):
    """Numerical optimizer failed to produce a reliable parameter set.

    Attributes
    ----------
    log_likelihood:
        Last evaluated log-likelihood (may be non-finite)
    iterations:
        Number of optimizer iterations performed
    parameters:
        Last parameter values visited by the optimizer (natural scale)
    degenerate_strata:
        Observation lengths (T) whose customers carry no frequency variance
    """

    def __init__(
        self,
        message: str,
        *,
        log_likelihood: float = float("nan"),
        iterations: int = 0,
        parameters: Optional[Mapping[str, float]] = None,
        degenerate_strata: Sequence[int] = (),
    ) -> None:
        super().__init__(message)
        self.log_likelihood = log_likelihood
        self.iterations = iterations
        self.parameters = dict(parameters or {})
        self.degenerate_strata = tuple(degenerate_strata)

    def __str__(self) -> str:
        base = super().__str__()
        details = (
            f"log_likelihood={self.log_likelihood:.6g}, iterations={self.iterations}"
        )
        if self.parameters:
            params = ", ".join(f"{k}={v:.6g}" for k, v in self.parameters.items())
            details += f", parameters=({params})"
        if self.degenerate_strata:
            details += f", degenerate_strata={list(self.degenerate_strata)}"
        return f"{base} [{details}]"


class DomainError(ValueError):
    """Model parameter outside the domain of a derived quantity."""

    def __init__(self, message: str, parameter: str, value: float) -> None:
        super().__init__(message)
        self.parameter = parameter
        self.value = value
