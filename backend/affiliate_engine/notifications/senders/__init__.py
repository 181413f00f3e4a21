from affiliate_engine.notifications.senders.base import DeliveryResult, DeliverySender
from affiliate_engine.notifications.senders.http import HttpGetSender


def get_sender() -> DeliverySender:
    return HttpGetSender()
