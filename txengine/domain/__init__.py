"""
Domain package for txengine.

Exports the statement and configuration models plus the codec contract.
Keep this package focused on data definitions and value conversion.
"""

from txengine.domain.codec import Codec, DefaultCodec, RowTarget
from txengine.domain.models import PoolSettings, Statement, StatementSignature

__all__ = [
    "Codec",
    "DefaultCodec",
    "PoolSettings",
    "RowTarget",
    "Statement",
    "StatementSignature",
]
