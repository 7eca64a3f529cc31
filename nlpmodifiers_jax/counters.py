"""Evaluation counters.

Each model owns one ``Counters`` record and increments exactly one field per
logical query. Counters are diagnostics only: nothing in the package reads
them to make a decision.
"""

import dataclasses
from dataclasses import dataclass


@dataclass
class Counters:
    """Number of evaluations of each query kind."""

    obj: int = 0
    grad: int = 0
    cons: int = 0
    jac: int = 0
    jprod: int = 0
    jtprod: int = 0
    hess: int = 0
    hprod: int = 0
    jhprod: int = 0
    residual: int = 0
    jac_residual: int = 0
    jprod_residual: int = 0
    jtprod_residual: int = 0
    hess_residual: int = 0
    jhess_residual: int = 0
    hprod_residual: int = 0

    def increment(self, name: str, amount: int = 1) -> None:
        if name not in self.__dataclass_fields__:
            raise AttributeError(f"unknown counter {name!r}")
        setattr(self, name, getattr(self, name) + amount)

    def reset(self) -> None:
        for field in dataclasses.fields(self):
            setattr(self, field.name, 0)

    def total(self) -> int:
        return sum(self.as_dict().values())

    def as_dict(self) -> dict[str, int]:
        return dataclasses.asdict(self)
