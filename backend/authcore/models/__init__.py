from authcore.models.organization import Membership, MembershipRole, Organization
from authcore.models.user import User

__all__ = ["Membership", "MembershipRole", "Organization", "User"]
