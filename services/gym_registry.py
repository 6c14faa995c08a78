from sqlmodel import Session

from models.gym import Gym
from services.errors import GymNotFound


class GymRegistry:
    """Read access to the gym records owned by the wider platform."""

    def __init__(self, session: Session):
        self.session = session

    def find_gym(self, gym_id: str) -> Gym | None:
        if not gym_id:
            return None
        return self.session.get(Gym, gym_id)

    def get_gym(self, gym_id: str) -> Gym:
        gym = self.find_gym(gym_id)
        if gym is None:
            raise GymNotFound(gym_id)
        return gym
