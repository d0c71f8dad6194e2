from .accounts import User, SessionToken
from .memberships import Plan, Membership, MembershipPayment
from .registry import MemberRecord
from .notifications import Notification

__all__ = [
    'User', 'SessionToken',
    'Plan', 'Membership', 'MembershipPayment',
    'MemberRecord',
    'Notification',
]
