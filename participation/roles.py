from .models import Member, MemberRole, ParticipationEntry


ROLE_HIERARCHY: dict[MemberRole, int] = {
    MemberRole.WEB_STEWARD: 8,
    MemberRole.BOARD_CHAIR: 7,
    MemberRole.COMMITTEE_LEADER: 6,
    MemberRole.CONTENT_MODERATOR: 5,
    MemberRole.SUPPORT_STAFF: 4,
    MemberRole.STEWARD: 3,
    MemberRole.PARTNER: 2,
    MemberRole.RESIDENT: 1,
}


def has_permission(role: MemberRole, required: MemberRole) -> bool:
    return ROLE_HIERARCHY[role] >= ROLE_HIERARCHY[required]


def is_admin(role: MemberRole) -> bool:
    return has_permission(role, MemberRole.BOARD_CHAIR)


def can_approve(actor: Member, entry: ParticipationEntry) -> bool:
    """Reviewers must be admins and may not decide their own entries."""
    return is_admin(actor.role) and actor.id != entry.member_id
