# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Column definitions used by table managers to describe their schema."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

String = "TEXT"
Integer = "INTEGER"
Epoch = "EPOCH"  # Unix seconds; resolved to the adapter's epoch_type
Json = "JSON"  # stored as TEXT, encoded/decoded by Table


@dataclass
class Column:
    """Single column definition."""

    name: str
    type_: str
    primary_key: bool = False
    nullable: bool = True
    default: Any = None

    def to_sql(self, epoch_type: str = "INTEGER") -> str:
        """Render the column definition for CREATE TABLE."""
        if self.type_ == Epoch:
            sql_type = epoch_type
        elif self.type_ == Json:
            sql_type = "TEXT"
        else:
            sql_type = self.type_
        parts = [self.name, sql_type]
        if self.primary_key:
            parts.append("PRIMARY KEY")
        elif not self.nullable:
            parts.append("NOT NULL")
        if self.default is not None:
            if isinstance(self.default, str):
                parts.append(f"DEFAULT '{self.default}'")
            else:
                parts.append(f"DEFAULT {self.default}")
        return " ".join(parts)


class Columns(dict[str, Column]):
    """Ordered mapping of column name to :class:`Column`."""

    def column(self, name: str, type_: str, **kwargs: Any) -> Column:
        col = Column(name, type_, **kwargs)
        self[name] = col
        return col

    def json_columns(self) -> list[str]:
        return [name for name, col in self.items() if col.type_ == Json]
