import logging
from datetime import date

from sqlmodel import Session, select

from models.membership import Membership, MembershipStatus

logger = logging.getLogger(__name__)


class MembershipLookup:
    """Membership collaborator: validity lookup plus session bookkeeping."""

    def __init__(self, session: Session):
        self.session = session

    def find_active_membership(
        self, member_id: str, gym_id: str, as_of: date
    ) -> Membership | None:
        return self.session.exec(
            select(Membership)
            .where(Membership.member_id == member_id)
            .where(Membership.gym_id == gym_id)
            .where(Membership.status == MembershipStatus.ACTIVE)
            .where(Membership.end_date >= as_of)
            .order_by(Membership.end_date.desc())
        ).first()

    def decrement_session(self, membership: Membership) -> bool:
        """
        Use one session of a session-based plan.

        Returns False (and changes nothing) for plans that do not track
        sessions or have none left.
        """
        if not membership.sessions_remaining or membership.sessions_remaining <= 0:
            return False

        membership.sessions_remaining -= 1
        membership.sessions_used = (membership.sessions_used or 0) + 1
        self.session.add(membership)
        self.session.commit()
        self.session.refresh(membership)
        logger.info(
            "[MEMBERSHIP] Member %s used a session at gym %s (%s left)",
            membership.member_id,
            membership.gym_id,
            membership.sessions_remaining,
        )
        return True

    def gym_member_ids(self, gym_id: str) -> list[str]:
        rows = self.session.exec(
            select(Membership.member_id).where(Membership.gym_id == gym_id).distinct()
        ).all()
        return sorted(rows)
