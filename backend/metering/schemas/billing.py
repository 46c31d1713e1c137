from pydantic import BaseModel


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str
    outcome: str
