from .client import ChameleonDiscordBot
from .gateway import DiscordWebhookGateway

__all__ = ["ChameleonDiscordBot", "DiscordWebhookGateway"]
