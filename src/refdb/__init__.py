from .base import Value, StorageType, ForeignKeyAction, DatabaseConfig, LoggingConfig, ConfigToml, TablesError, LinkError, DecodeError, MissingPrimaryKey
from .columns import NotNullConstraint, DefaultConstraint, CheckConstraint, CollateConstraint, CustomConstraint, Column, Unique, PrimaryKey, ForeignKey
from .schema import PrimaryKeyGroup, UniqueGroup, ForeignKeyGroup, TableConstraints, Template, TemplateCache, templates, Schema
from .relations import ToMany, ToOne, Pivot, pivot_schema
from .ddl import CreateTable, create_statement, prepare
from .db import TableColumnMeta, Database
from .ref import Ref, save_all, delete_all
from .config import load_config, apply_config
from .util import logger, configure_logging

__all__ = [
    'Value',
    'StorageType',
    'ForeignKeyAction',
    'DatabaseConfig',
    'LoggingConfig',
    'ConfigToml',
    'TablesError',
    'LinkError',
    'DecodeError',
    'MissingPrimaryKey',
    'NotNullConstraint',
    'DefaultConstraint',
    'CheckConstraint',
    'CollateConstraint',
    'CustomConstraint',
    'Column',
    'Unique',
    'PrimaryKey',
    'ForeignKey',
    'PrimaryKeyGroup',
    'UniqueGroup',
    'ForeignKeyGroup',
    'TableConstraints',
    'Template',
    'TemplateCache',
    'templates',
    'Schema',
    'ToMany',
    'ToOne',
    'Pivot',
    'pivot_schema',
    'CreateTable',
    'create_statement',
    'prepare',
    'TableColumnMeta',
    'Database',
    'Ref',
    'save_all',
    'delete_all',
    'load_config',
    'apply_config',
    'logger',
    'configure_logging'
]
