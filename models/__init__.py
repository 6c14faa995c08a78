from .attendance import AttendanceRecord, AttendanceStatus, AuthenticationMethod
from .attendance_settings import AttendanceMode, AttendanceSettings
from .geofence_config import FenceShape, GeofenceConfig
from .gym import Gym
from .member_location_status import MemberLocationStatus
from .membership import Membership, MembershipStatus
from .notification import Notification
