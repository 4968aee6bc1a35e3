"""Settings and playbook loading."""
from .settings import Settings, PASSPHRASE_ENV
from .playbook import Playbook, load_playbook, parse_connection

__all__ = ["Settings", "PASSPHRASE_ENV", "Playbook", "load_playbook", "parse_connection"]
