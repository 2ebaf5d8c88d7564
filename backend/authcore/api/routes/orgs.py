from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from authcore.api.deps import AuthContext, get_auth_context, get_user_store, require_org_role
from authcore.models.organization import Membership, MembershipRole
from authcore.services.users import SqlAlchemyUserStore

router = APIRouter(prefix="/orgs", tags=["orgs"])


class OrganizationUpdate(BaseModel):
    name: str = Field(min_length=1, max_length=120)


def _membership_out(m: Membership) -> dict:
    return {
        "id": m.organization.id,
        "name": m.organization.name,
        "role": m.role.value,
    }


@router.get("")
def list_organizations(
    ctx: AuthContext = Depends(get_auth_context),
    users: SqlAlchemyUserStore = Depends(get_user_store),
):
    return {"organizations": [_membership_out(m) for m in users.memberships_for(ctx.user.id)]}


@router.patch("/{org_id}")
def rename_organization(
    org_id: int,
    body: OrganizationUpdate,
    membership: Membership = Depends(require_org_role(MembershipRole.OWNER, MembershipRole.ADMIN)),
    users: SqlAlchemyUserStore = Depends(get_user_store),
):
    org = membership.organization
    org.name = body.name.strip()
    users.db.commit()
    users.db.refresh(org)
    return {"organization": {"id": org.id, "name": org.name, "role": membership.role.value}}
