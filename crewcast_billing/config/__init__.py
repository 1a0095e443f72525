from crewcast_billing.config.config import Config

__all__ = ["Config"]
