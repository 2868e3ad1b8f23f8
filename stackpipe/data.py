"""
Data stack - storage backend handles consumed by the stage composer.

The storage backend is an external collaborator. This module only exposes
named table handles that other stacks reference across the stack boundary
and grant permissions against. Granting is declarative: it records the
access level on the unit, and the translation step turns it into the
table's own grant when the stacks are rendered.
"""

from dataclasses import dataclass, field
from typing import Any

from stackpipe.schemas import DeployableUnit, logical_id_for

READ_DATA = "read_data"
READ_WRITE_DATA = "read_write_data"

PARTITION_KEY = "id"


@dataclass(frozen=True)
class TableHandle:
    """A named table owned by the data stack of one environment."""
    name: str
    environment: str
    stack_name: str

    @property
    def table_name(self) -> str:
        return f"{self.name}-{self.environment}"

    @property
    def logical_id(self) -> str:
        return logical_id_for(f"{self.name.title()}Table")

    @property
    def env_var(self) -> str:
        return f"{logical_id_for(self.name).upper()}_TABLE"

    def grant_read_data(self, unit: DeployableUnit) -> None:
        unit.grant(READ_DATA, self.name)

    def grant_read_write_data(self, unit: DeployableUnit) -> None:
        unit.grant(READ_WRITE_DATA, self.name)


@dataclass
class DataStack:
    """Storage resources of one environment."""
    environment: str
    tables: dict[str, TableHandle] = field(default_factory=dict)

    @property
    def stack_name(self) -> str:
        return data_stack_name(self.environment)

    @classmethod
    def for_environment(cls, environment: str, table_names) -> "DataStack":
        stack = cls(environment=environment)
        for name in table_names:
            stack.tables[name] = TableHandle(name=name, environment=environment, stack_name=stack.stack_name)
        return stack

    def refs(self) -> dict[str, TableHandle]:
        """Cross-stack references handed to the stage composer."""
        return dict(self.tables)

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "stack_name": self.stack_name,
            "tables": [t.table_name for t in self.tables.values()],
        }


def data_stack_name(environment: str) -> str:
    return f"{environment}-Data"
