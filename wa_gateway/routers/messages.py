from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from wa_gateway.dependencies import Gateway, get_gateway
from wa_gateway.schemas.message import SendMessageRequest

router = APIRouter(tags=["messages"])


@router.post("/messages")
async def send_message(request: SendMessageRequest, gateway: Gateway = Depends(get_gateway)):
    """Send now (200), queue for a later retry (202) or reject with a reason code."""
    outcome = await gateway.messages.submit(request.session_id, request.to, request.text)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
