"""FastAPI dependencies resolving collaborators from the app's container."""

from fastapi import Request

from streakline.container import Container


def get_container(request: Request) -> Container:
    return request.app.state.container
