'''
Shared aliases, config models and errors used throughout the package.
'''

from typing import Literal, NotRequired, TypedDict

type Value = int|float|str|bool|bytes|None|list|dict
'''Universal representation of a stored value, as sqlite sees it.'''

type StorageType = Literal['TEXT', 'INTEGER', 'REAL', 'BLOB']
'''Storage class of a column.'''

type ForeignKeyAction = Literal[
    'NO ACTION', 'RESTRICT', 'SET NULL', 'SET DEFAULT', 'CASCADE'
]

type PrimaryKeyKind = Literal['uuid', 'int']
'''uuid keys are assigned client-side, int keys by the database.'''

class DatabaseConfig(TypedDict):
    database: str
    foreign_keys: NotRequired[bool]
    echo: NotRequired[bool]

class LoggingConfig(TypedDict):
    level: NotRequired[str]
    color: NotRequired[bool]

class ConfigToml(TypedDict):
    database: NotRequired[DatabaseConfig]
    logging: NotRequired[LoggingConfig]

class TablesError(Exception):
    '''Base class for errors raised by refdb itself.'''

class LinkError(TablesError, ValueError):
    '''A relation was set to a row which has no primary key yet.'''

class DecodeError(TablesError, TypeError):
    '''A stored value couldn't be decoded to its column's declared type.'''

class MissingPrimaryKey(TablesError, LookupError):
    '''An operation needed a primary key which wasn't available.'''
