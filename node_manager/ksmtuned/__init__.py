"""Ksmtuned controller and the KSM daemon adapter it manages."""

from .controller import Controller, default_ksmtuned, register
from .ksmtuned import KsmStats, Ksmtuned, KsmtunedParameters, KsmtunedSpec

__all__ = [
    "Controller",
    "KsmStats",
    "Ksmtuned",
    "KsmtunedParameters",
    "KsmtunedSpec",
    "default_ksmtuned",
    "register",
]
