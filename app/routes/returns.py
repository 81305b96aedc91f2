from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile, status
from typing import Dict
from app.schemas.damage import DamageFace, FaceUpdateRequest, ObservationView, ReturnPreview
from app.schemas.returns import NoteRequest, ReturnSessionView, StartReturnRequest
from app.services.platform_client import PlatformError
from app.services.return_protocol import ReturnProtocolError, ReturnSession
from app.services.station import Station, get_station
from app.routes.errors import platform_http_error, return_http_error

router = APIRouter(prefix="/api/returns", tags=["Returns"])

def _session_view(session: ReturnSession) -> ReturnSessionView:
    return ReturnSessionView(
        serialNumber=session.serial_number,
        generation=session.generation,
        note=session.note,
        faces=[
            ObservationView(face=obs.face, issue=obs.issue, hasImage=obs.image is not None)
            for obs in session.observations.values()
        ],
        localAssessment=session.assessment,
        preview=session.preview,
    )

async def _current_session(station: Station) -> ReturnSession:
    """The open return session, with the damage policy loaded for its preview."""
    try:
        session = station.return_flow.require_session()
    except ReturnProtocolError as e:
        raise return_http_error(e)
    await station.return_flow.ensure_policy()
    return session

@router.get("/policy", response_model=Dict[str, float])
async def get_damage_policy(station: Station = Depends(get_station)):
    """Get the damage policy (issue -> points) used for the local preview."""
    return await station.return_flow.ensure_policy()

@router.post("/session", response_model=ReturnSessionView, status_code=status.HTTP_201_CREATED)
async def start_return(request: StartReturnRequest, station: Station = Depends(get_station)):
    """Start a return for a serial number typed in by hand."""
    try:
        session = station.return_flow.begin(request.serial_number)
    except ReturnProtocolError as e:
        raise return_http_error(e)
    await station.return_flow.ensure_policy()
    return _session_view(session)

@router.get("/session", response_model=ReturnSessionView)
async def get_return_session(station: Station = Depends(get_station)):
    """Get the return form, including the local damage preview."""
    session = await _current_session(station)
    return _session_view(session)

@router.delete("/session", status_code=status.HTTP_204_NO_CONTENT)
async def abandon_return(station: Station = Depends(get_station)):
    station.return_flow.abandon()

@router.put("/session/faces/{face}", response_model=ReturnSessionView)
async def set_face_issue(face: DamageFace, request: FaceUpdateRequest, station: Station = Depends(get_station)):
    await _current_session(station)
    session = station.return_flow.update_face(face, issue=request.issue)
    return _session_view(session)

@router.post("/session/faces/{face}/image", response_model=ReturnSessionView)
async def upload_face_image(
    face: DamageFace,
    image: UploadFile = File(...),
    station: Station = Depends(get_station)
):
    """Attach a photo of one face; it is uploaded to the platform by the check step."""
    await _current_session(station)
    content = await image.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty image file")
    session = station.return_flow.set_face_image(
        face,
        filename=image.filename or f"{face.value}.jpg",
        content=content,
        content_type=image.content_type,
    )
    return _session_view(session)

@router.delete("/session/faces/{face}/image", response_model=ReturnSessionView)
async def remove_face_image(face: DamageFace, station: Station = Depends(get_station)):
    await _current_session(station)
    session = station.return_flow.update_face(face, image=None)
    return _session_view(session)

@router.put("/session/note", response_model=ReturnSessionView)
async def set_note(request: NoteRequest, station: Station = Depends(get_station)):
    await _current_session(station)
    return _session_view(station.return_flow.set_note(request.note))

@router.post("/session/check", response_model=ReturnPreview)
async def check_return(station: Station = Depends(get_station)):
    """Phase 1: upload faces and get the server's damage points and condition."""
    try:
        preview = await station.return_flow.check()
    except ReturnProtocolError as e:
        raise return_http_error(e)
    except PlatformError as e:
        raise platform_http_error(e)
    if preview is None:
        # material unknown to the platform: nothing to show
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return preview

@router.post("/session/confirm")
async def confirm_return(station: Station = Depends(get_station)):
    """Phase 2: record the return with the values from phase 1."""
    try:
        result = await station.return_flow.confirm()
    except ReturnProtocolError as e:
        raise return_http_error(e)
    except PlatformError as e:
        raise platform_http_error(e)
    return {"message": "Return confirmed", "result": result}
