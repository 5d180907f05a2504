from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..utils.validators import is_valid_identifier


class Api(str, Enum):
    """Request names understood by the query executor."""

    INIT_DB = "init_db"
    OPEN_DB = "open_db"
    DROP_DB = "drop_db"
    SELECT = "select"
    COUNT = "count"
    INSERT = "insert"
    UPDATE = "update"
    REMOVE = "remove"
    CLEAR = "clear"
    GET = "get"
    SET = "set"
    TRANSACTION = "transaction"
    UNION = "union"
    INTERSECT = "intersect"
    CHANGE_LOG_STATUS = "change_log_status"
    MIDDLEWARE = "middleware"
    IMPORT_SCRIPTS = "import_scripts"
    TERMINATE = "terminate"


DataType = Literal["string", "number", "boolean", "object", "array", "date_time"]
SortOrder = Literal["asc", "desc"]
WhereClause = Union[Dict[str, Any], List[Dict[str, Any]]]


class _Identified(BaseModel):
    name: str

    @field_validator("name")
    def name_must_be_identifier(cls, v: str) -> str:
        if not is_valid_identifier(v):
            raise ValueError(f"Invalid identifier: {v!r}")
        return v


class Column(_Identified):
    """A column definition."""

    data_type: DataType = "string"
    primary_key: bool = False
    auto_increment: bool = False
    not_null: bool = False
    unique: bool = False
    default: Any = None


class Table(_Identified):
    """A table definition."""

    columns: List[Column]

    @field_validator("columns")
    def at_most_one_primary_key(cls, v: List[Column]) -> List[Column]:
        if sum(1 for c in v if c.primary_key) > 1:
            raise ValueError("A table can have at most one primary key column")
        return v

    def column(self, name: str) -> Optional[Column]:
        for c in self.columns:
            if c.name == name:
                return c
        return None


class Database(_Identified):
    """A database schema; ``version`` drives create/upgrade handling."""

    version: int = Field(1, ge=1)
    tables: List[Table] = Field(default_factory=list)

    def table(self, name: str) -> Optional[Table]:
        for t in self.tables:
            if t.name == name:
                return t
        return None


class DbInfo(BaseModel):
    name: str
    version: Optional[int] = None


class InitDbResult(BaseModel):
    is_created: bool
    database: Database
    old_version: Optional[int] = None
    new_version: Optional[int] = None


class Order(BaseModel):
    by: str
    type: SortOrder = "asc"


class SelectQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from")
    where: Optional[WhereClause] = None
    order: Optional[Union[Order, List[Order]]] = None
    limit: Optional[int] = Field(None, ge=0)
    skip: Optional[int] = Field(None, ge=0)
    distinct: bool = False
    columns: Optional[List[str]] = None


class CountQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from")
    where: Optional[WhereClause] = None


class InsertQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    into: str
    values: List[Dict[str, Any]]
    return_: bool = Field(False, alias="return")
    upsert: bool = False
    ignore: bool = False


class UpdateQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    in_: str = Field(alias="in")
    set: Dict[str, Any]
    where: Optional[WhereClause] = None


class RemoveQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from")
    where: Optional[WhereClause] = None


class SetQuery(BaseModel):
    key: str
    value: Any = None


class IntersectQuery(BaseModel):
    queries: List[SelectQuery]


class TransactionQuery(BaseModel):
    """``method`` is a coroutine function or a ``"module:function"`` path."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    tables: List[str] = Field(default_factory=list)
    method: Union[str, Callable[..., Any]]
    data: Any = None
