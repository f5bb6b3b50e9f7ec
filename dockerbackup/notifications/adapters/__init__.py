from .base import AdapterBase, AdapterResult
from .smtp import SMTPAdapter
from .generic import GenericAdapter

__all__ = ['AdapterBase', 'AdapterResult', 'SMTPAdapter', 'GenericAdapter']
