from .app import create_app
from .services import VotingServices, build_services

__all__ = ["create_app", "build_services", "VotingServices"]
