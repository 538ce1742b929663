'''
TOML configuration, eg

    [database]
    database = "sqlite:///private/tables.db"
    foreign_keys = true

    [logging]
    level = "DEBUG"
    color = true
'''

import tomllib

from pydantic import TypeAdapter

from .base import ConfigToml
from .util import configure_logging

__all__ = [
    'load_config',
    'apply_config'
]

def load_config(path: str) -> ConfigToml:
    '''Load and validate a config file.'''

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return TypeAdapter(ConfigToml).validate_python(data)

def apply_config(config: ConfigToml):
    '''Apply the parts of a config which aren't tied to a database.'''

    if log := config.get('logging'):
        configure_logging(log.get('level'), log.get('color', False))
