from fastapi import Request

from marketcycle.bootstrap import CycleServices


def get_services(request: Request) -> CycleServices:
    """The service graph attached to the app by its lifespan."""
    return request.app.state.services
