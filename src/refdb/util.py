import logging
import os
import sys
from threading import RLock
from types import GenericAlias
from typing import Annotated, Any, Callable, ClassVar, ForwardRef, Optional, Self, TypeAliasType, get_origin, overload
from weakref import WeakKeyDictionary

from prompt_toolkit import print_formatted_text
from prompt_toolkit.patch_stdout import patch_stdout
from prompt_toolkit.formatted_text import FormattedText

class ColorLogHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        fmt ='[%(levelname)s] [%(filename)s:%(lineno)d] %(message)s'
        self.formatter = logging.Formatter(fmt)

    def emit(self, record):
        try:
            with patch_stdout():
                msg = self.format(record)
                color = self.get_color(record.levelno)
                formatted_text = FormattedText([(color, msg)])
                print_formatted_text(formatted_text)
        except Exception:
            self.handleError(record)

    def get_color(self, levelno):
        if levelno >= logging.ERROR:
            return 'ansired'
        elif levelno >= logging.WARNING:
            return 'ansiyellow'
        elif levelno >= logging.INFO:
            return 'ansigreen'
        else:  # DEBUG and NOTSET
            return 'ansiblue'

logger = logging.getLogger("refdb")
LOG_LEVEL = "INFO"
if LOG_LEVEL := os.getenv("LOG_LEVEL", LOG_LEVEL).upper():
    logger.setLevel(LOG_LEVEL)
elif os.getenv("LOGLEVEL"):
    logger.warning("Use LOG_LEVEL, not LOGLEVEL")

def configure_logging(level: Optional[str]=None, color: bool=False):
    '''Apply logging settings, eg from the [logging] table of a config.'''

    if level:
        logger.setLevel(level.upper())
        logger.debug("Set log level to %s", level.upper())

    has_color = any(isinstance(h, ColorLogHandler) for h in logger.handlers)
    if color and not has_color:
        logger.addHandler(ColorLogHandler())
    elif not color and has_color:
        for h in list(logger.handlers):
            if isinstance(h, ColorLogHandler):
                logger.removeHandler(h)

class NotGiven:
    '''Placeholder for value which isn't given.'''

    def __init__(self): raise NotImplementedError()
    def __bool__(self): return False
    def __repr__(self): return "NOT_GIVEN"

# Using __new__ to implement singleton pattern
NOT_GIVEN = object.__new__(NotGiven)
'''Placeholder for value which isn't given.'''

type Thunk[T] = Callable[[], T]
type Defer[T] = T|Thunk[T]
type TypeRef = str|ForwardRef|GenericAlias|TypeAliasType|Annotated

def typename(t: TypeRef|Any) -> str:
    '''Return the name of a type, or the name of a value's type.'''

    if get_origin(t) is None:
        if not isinstance(t, type):
            t = type(t)
        return t.__name__ # type: ignore
    return str(t)

def indent(text: str, level: int=1, indent: str="    "):
    '''Indent a block of text.'''
    return "\n".join(indent*level + line for line in text.splitlines())

def resolve_ref(ref: Defer[type]|str, owner: Optional[type]=None) -> type:
    '''
    Resolve a lazy reference to a class. Strings are looked up in the
    globals of the module which defined owner, callables (that aren't
    classes) are thunks which are called.
    '''

    match ref:
        case type():
            return ref

        case str(name):
            if owner is None:
                raise ValueError(f"Cannot resolve {name!r} without an owner")
            ns = vars(sys.modules[owner.__module__])
            try:
                return ns[name]
            except KeyError:
                raise NameError(
                    f"{name!r} is not defined in {owner.__module__}"
                ) from None

        case _ if callable(ref):
            return resolve_ref(ref(), owner)

        case _:
            raise TypeError(f"Cannot resolve {typename(ref)} to a class")

class deferred_property[T]:
    '''A property which can be resolved later with minimal friction.'''

    deferral: WeakKeyDictionary[Any, Thunk[T]]
    _lock: ClassVar[RLock] = RLock()
    '''Shared by all deferred properties, resolutions may nest.'''

    def __init__(self):
        self.deferral = WeakKeyDictionary()

    def __set_name__(self, owner, name: str):
        self.__name__ = name

    @overload
    def __get__(self, instance: None, owner) -> Self: ...
    @overload
    def __get__(self, instance, owner) -> T: ...

    def __get__(self, instance, owner) -> Self|T:
        if instance is None:
            return self

        value = instance.__dict__.get(self.__name__, NOT_GIVEN)
        if value is not NOT_GIVEN:
            return value

        with self._lock:
            # Another thread may have resolved it while we waited
            value = instance.__dict__.get(self.__name__, NOT_GIVEN)
            if value is not NOT_GIVEN:
                return value

            try:
                deferral = self.deferral[instance]
            except KeyError:
                raise AttributeError(f"{typename(owner)}.{self.__name__} has no deferral") from None

            # Only drop the deferral once it succeeds, a failed resolution
            #  (eg a class which isn't defined yet) can be retried
            value = deferral()
            del self.deferral[instance]
            setattr(instance, self.__name__, value)
            return value

    def __set__(self, instance, value: T):
        instance.__dict__[self.__name__] = value

    def is_resolved(self, instance) -> bool:
        '''Whether the value has been resolved (or given directly).'''
        return self.__name__ in instance.__dict__

    def defer(self, instance, deferral: Defer[T]):
        '''Explicitly defer a value.'''
        if callable(deferral) and not isinstance(deferral, type):
            self.deferral[instance] = deferral
        else:
            setattr(instance, self.__name__, deferral)
        return self
