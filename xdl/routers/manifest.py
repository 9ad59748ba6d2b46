import asyncio
import json
from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from xdl.common.logger import setup_logger
from xdl.services.project_config import DoctorResult, validate_project

router = APIRouter()
logger = setup_logger("ManifestServer")

MANIFEST_PATHS = ("/", "/manifest", "/index.exp")

_background_tasks: set[asyncio.Task] = set()

def _run_doctor_in_background(project_root: str, project_logger) -> None:
  async def run():
    try:
      result = await asyncio.to_thread(validate_project, project_root, project_logger)
      if result >= DoctorResult.ERROR:
        logger.debug(f"[ManifestServer] Project validation finished with {result.name}")
    except Exception as e:
      logger.error(f"[ManifestServer] Project validation crashed: {e}")

  task = asyncio.create_task(run())
  _background_tasks.add(task)
  task.add_done_callback(_background_tasks.discard)

async def serve_manifest(
  request: Request,
  exponent_platform: str | None = Header(None),
  exponent_accept_signature: str | None = Header(None),
):
  server = request.app.state.expo_server
  _run_doctor_in_background(server.project_root, server.project_logger)

  try:
    body, manifest, host_info = await server.manifest_service.get_manifest_response(
      host=request.headers.get("host"),
      platform_name=exponent_platform or "ios",
      accept_signature=bool(exponent_accept_signature),
    )
  except Exception as e:
    server.project_logger.error("expo", f"Error serving manifest: {e}")
    return JSONResponse(status_code=520, content={"error": str(e)})

  return Response(
    content=body,
    media_type="application/json",
    headers={"Exponent-Server": json.dumps(host_info)},
  )

for path in MANIFEST_PATHS:
  router.add_api_route(path, serve_manifest, methods=["GET"])

@router.post("/logs", response_class=PlainTextResponse)
async def receive_device_logs(
  request: Request,
  device_id: str | None = Header(None),
  device_name: str | None = Header(None),
):
  server = request.app.state.expo_server
  try:
    logs = await request.json()
  except ValueError:
    logs = None

  if device_id and device_name and isinstance(logs, list):
    server.manifest_service.handle_device_logs(device_id, device_name, logs)
  return "Success"

@router.post("/shutdown", response_class=PlainTextResponse)
async def shutdown(request: Request):
  request.app.state.expo_server.request_shutdown()
  return "Success"
