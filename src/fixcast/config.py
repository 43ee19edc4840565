from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Escalation loop (seconds)
    alarm_frequency: float = 900.0
    max_fix_age: float = 3600.0
    followup_delay: float = 10.0
    handshake_delay: float = 30.0
    continuous_followup_delay: float = 1.0

    broadcast_every_reading: bool = False
    debug_logging: bool = False
    log_level: str = "INFO"

    # Empty path = in-memory store
    state_path: str = ""

    # Downstream (empty url = no webhook)
    webhook_url: str = ""
    webhook_timeout: float = 2.0
    recent_notifications: int = 50

    # Serial GPS (empty port = disabled)
    gps_serial_port: str = ""
    gps_serial_baud: int = 9600

    # MAVLink2REST passive feed (empty host = disabled)
    mavlink_host: str = ""
    target_system: int = 1

    model_config = {"env_prefix": "FIXCAST_"}

    @property
    def mavlink_ws_url(self) -> str:
        return f"ws://{self.mavlink_host}/mavlink2rest/ws/mavlink"

    @property
    def gps_enabled(self) -> bool:
        return bool(self.gps_serial_port)

    @property
    def mavlink_enabled(self) -> bool:
        return bool(self.mavlink_host)

    @property
    def alarm_frequency_ms(self) -> int:
        return int(self.alarm_frequency * 1000)

    @property
    def max_fix_age_ms(self) -> int:
        return int(self.max_fix_age * 1000)
