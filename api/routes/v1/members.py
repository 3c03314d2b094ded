"""
api/routes/v1/members.py -- Organization access and membership REST endpoints.

Routes:
  GET    /organizations/{org_id}/access                -- caller's effective access
  GET    /organizations/{org_id}/members               -- list explicit members
  POST   /organizations/{org_id}/members               -- add by user_id or email
  PATCH  /organizations/{org_id}/members/{member_id}   -- change a member's role
  DELETE /organizations/{org_id}/members/{member_id}   -- remove a member

Every route resolves the caller's effective role through require_org_role().
No access at all is a 404 -- identical to a missing organization -- so IDs
cannot be probed. Membership management needs admin or above; an insufficient
role is a 403 with one permission_denied audit entry.

Membership changes are audited on the organization: member_added,
member_role_changed, member_removed.

IDOR guard: member_id lookups are scoped to org_id in the store, so a
member id from another organization is a 404.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import IntegrityError

from api.models import AccessResponse, MemberCreate, MemberResponse, MemberRoleUpdate
from auth.dependencies import csrf_protect, get_current_user, require_org_role
from auth.errors import ConflictError, InvalidInputError, NotFoundError
from auth.models import EffectiveAccess, OrganizationMembership, User
from auth.store import MembershipStore, UserStore

router = APIRouter(dependencies=[Depends(get_current_user)])


@router.get("/organizations/{org_id}/access", response_model=AccessResponse)
def get_access(org_id: int, access: EffectiveAccess = Depends(require_org_role("viewer"))) -> AccessResponse:
    """Return the caller's effective role on the organization."""
    return AccessResponse.from_access(org_id, access)


@router.get("/organizations/{org_id}/members", response_model=list[MemberResponse])
def list_members(
    request: Request,
    org_id: int,
    access: EffectiveAccess = Depends(require_org_role("admin")),
) -> list[MemberResponse]:
    """List explicit members, newest first. The owner has no membership row and is not listed."""
    memberships: MembershipStore = request.app.state.membership_store
    return [MemberResponse.from_membership(m) for m in memberships.list_members(org_id)]


@router.post(
    "/organizations/{org_id}/members",
    response_model=MemberResponse,
    status_code=201,
    dependencies=[Depends(csrf_protect)],
)
def add_member(
    request: Request,
    org_id: int,
    body: MemberCreate,
    access: EffectiveAccess = Depends(require_org_role("admin")),
    current_user: User = Depends(get_current_user),
) -> MemberResponse:
    """Add a user to the organization, identified by user_id or by email."""
    if (body.user_id is None) == (body.email is None):
        raise InvalidInputError("Provide exactly one of user_id or email.")

    user_store: UserStore = request.app.state.user_store
    memberships: MembershipStore = request.app.state.membership_store

    target = user_store.get_by_id(body.user_id) if body.user_id is not None else user_store.get_by_email(body.email)
    if target is None:
        raise NotFoundError("User not found.")

    org = memberships.get_organization(org_id)
    if org is not None and org.created_by_id == target.id:
        raise ConflictError("User is already the owner of this organization.")

    try:
        member_id = memberships.add_member(
            OrganizationMembership(
                organization_id=org_id,
                user_id=target.id,
                role=body.role.value,
                added_by_id=current_user.id,
            )
        )
    except IntegrityError as exc:
        raise ConflictError("User is already a member.") from exc

    created = memberships.get_member(org_id, member_id)
    request.app.state.audit_log.append(
        org_id,
        current_user,
        "member_added",
        "member",
        str(member_id),
        {"userId": target.id, "userEmail": target.email, "role": created.role},
    )
    return MemberResponse.from_membership(created)


@router.patch(
    "/organizations/{org_id}/members/{member_id}",
    response_model=MemberResponse,
    dependencies=[Depends(csrf_protect)],
)
def update_member_role(
    request: Request,
    org_id: int,
    member_id: int,
    body: MemberRoleUpdate,
    access: EffectiveAccess = Depends(require_org_role("admin")),
    current_user: User = Depends(get_current_user),
) -> MemberResponse:
    """Change a member's organization role."""
    memberships: MembershipStore = request.app.state.membership_store
    existing = memberships.get_member(org_id, member_id)
    if existing is None:
        raise NotFoundError("Member not found.")

    memberships.update_member_role(org_id, member_id, body.role.value)
    updated = memberships.get_member(org_id, member_id)
    request.app.state.audit_log.append(
        org_id,
        current_user,
        "member_role_changed",
        "member",
        str(member_id),
        {"userId": existing.user_id, "oldRole": existing.role, "newRole": updated.role},
    )
    return MemberResponse.from_membership(updated)


@router.delete(
    "/organizations/{org_id}/members/{member_id}",
    status_code=204,
    dependencies=[Depends(csrf_protect)],
)
def remove_member(
    request: Request,
    org_id: int,
    member_id: int,
    access: EffectiveAccess = Depends(require_org_role("admin")),
    current_user: User = Depends(get_current_user),
) -> None:
    """Remove a member. Access is re-derived on their next request."""
    memberships: MembershipStore = request.app.state.membership_store
    existing = memberships.get_member(org_id, member_id)
    if existing is None or not memberships.remove_member(org_id, member_id):
        raise NotFoundError("Member not found.")

    request.app.state.audit_log.append(
        org_id,
        current_user,
        "member_removed",
        "member",
        str(member_id),
        {"userId": existing.user_id, "userEmail": existing.user_email, "role": existing.role},
    )
