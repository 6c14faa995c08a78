# Insert a demo gym with a member and a circular fence
import logging
from datetime import date, timedelta

from sqlmodel import Session, SQLModel, select

import models  # noqa: F401  registers every table
from db.session import engine
from models.gym import Gym
from models.membership import Membership, MembershipStatus
from services.fence_config_service import FenceConfigService

logger = logging.getLogger(__name__)

DEMO_GYM_ID = "DEMO-GYM"
DEMO_MEMBER_ID = "demo-member"


def seed_demo_gym():
    SQLModel.metadata.create_all(engine)

    with Session(engine) as session:
        if session.get(Gym, DEMO_GYM_ID) is None:
            session.add(
                Gym(
                    id=DEMO_GYM_ID,
                    name="Demo Fitness",
                    latitude=28.6139,
                    longitude=77.2090,
                    geofence_radius=100.0,
                    opening_time="05:00",
                    closing_time="23:00",
                    active_days=["monday", "tuesday", "wednesday", "thursday", "friday", "saturday"],
                    timezone="Asia/Kolkata",
                )
            )
            session.commit()
            logger.info("Added demo gym %s", DEMO_GYM_ID)
        else:
            logger.info("Demo gym %s already exists", DEMO_GYM_ID)

        existing_membership = session.exec(
            select(Membership)
            .where(Membership.member_id == DEMO_MEMBER_ID)
            .where(Membership.gym_id == DEMO_GYM_ID)
        ).first()
        if existing_membership is None:
            today = date.today()
            session.add(
                Membership(
                    member_id=DEMO_MEMBER_ID,
                    gym_id=DEMO_GYM_ID,
                    status=MembershipStatus.ACTIVE,
                    start_date=today,
                    end_date=today + timedelta(days=90),
                    sessions_remaining=12,
                )
            )
            session.commit()
            logger.info("Added demo membership for %s", DEMO_MEMBER_ID)

        # Creates the default fence and legacy snapshot if missing
        FenceConfigService(session).get_or_create(DEMO_GYM_ID)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    seed_demo_gym()
