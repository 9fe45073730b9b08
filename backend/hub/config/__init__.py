from hub.config.settings import HubSettings, get_settings, reset_settings

__all__ = ["HubSettings", "get_settings", "reset_settings"]
