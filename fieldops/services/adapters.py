"""
Delivery adapter bundle handed to the stage executor and the timeout monitor.
Production wiring uses the provider modules; tests pass fakes.
"""
from fieldops.services import chat, payments, sms, voice


class DeliveryAdapters:
    """The outbound channels the orchestration core talks through."""

    def __init__(
        self,
        send_text=None,
        place_call=None,
        send_chat=None,
        create_payment_link=None,
    ):
        self.send_text = send_text or sms.send_text
        self.place_call = place_call or voice.place_call
        self.send_chat = send_chat or chat.send_chat_message
        self.create_payment_link = create_payment_link or payments.create_payment_link

    def __repr__(self) -> str:
        return "<DeliveryAdapters>"
