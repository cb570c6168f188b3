"""Stateless parsers for the raw output of each orchestrated tool."""

from .clamav import ClamAVOutputParser
from .fail2ban import Fail2banOutputParser
from .falco import FalcoOutputParser
from .trivy import TrivyOutputParser
from .ufw import UfwOutputParser

__all__ = [
    "ClamAVOutputParser",
    "Fail2banOutputParser",
    "FalcoOutputParser",
    "TrivyOutputParser",
    "UfwOutputParser",
]
