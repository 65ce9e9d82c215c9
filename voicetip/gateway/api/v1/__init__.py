from voicetip.gateway.api.v1.tts import router as tts_router
from voicetip.gateway.api.v1.ws import router as ws_router

__all__ = ["routers"]
routers = [tts_router, ws_router]
