from fastapi import Request

from app.services.broker import ChatBroker


def get_broker(request: Request) -> ChatBroker:
    return request.app.state.broker
