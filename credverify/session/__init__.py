"""
Attestation-session service: authentication, refresh and the event stream.
"""

from credverify.session.manager import SessionManager
from credverify.session.models import AuthState, Session, StreamState
from credverify.session.stream import StreamConnection

__all__ = ["AuthState", "Session", "SessionManager", "StreamConnection", "StreamState"]
