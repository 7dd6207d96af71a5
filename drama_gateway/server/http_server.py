import asyncio
import functools
import threading
import time

from aiohttp import web
from loguru import logger

from drama_gateway.core.ai_dispatcher import AIDispatcher
from drama_gateway.core.media_generator import MediaGenerator
from drama_gateway.core.prop_generator import PropGenerator
from drama_gateway.core.style_consistency import style_checker
from drama_gateway.models.errors import AIServiceError, ConfigNotFoundError
from drama_gateway.server.ai_config_service import AIConfigService
from drama_gateway.server.database import SessionLocal, session_scope
from drama_gateway.server.generation_service import GenerationJobService
from drama_gateway.server.log_service import LogService
from drama_gateway.server.task_runner import TaskOrchestrator
from drama_gateway.utils.storage import LocalStorage, StorageError


class AppServices:
    """Everything the handlers need, wired once per application."""

    def __init__(self, session_factory=None, dispatcher: AIDispatcher = None,
                 orchestrator: TaskOrchestrator = None, jobs: GenerationJobService = None,
                 storage: LocalStorage = None):
        self.session_factory = session_factory or SessionLocal
        self.storage = storage or LocalStorage()
        self.dispatcher = dispatcher or AIDispatcher(self.session_factory, storage=self.storage)
        self.orchestrator = orchestrator or TaskOrchestrator(self.session_factory)
        self.jobs = jobs or GenerationJobService(self.dispatcher, self.session_factory, storage=self.storage)
        self.props = PropGenerator(self.dispatcher, self.orchestrator, self.jobs)
        self.media = MediaGenerator(self.orchestrator, self.jobs)
        self.checker = style_checker


SERVICES_KEY = web.AppKey("services", AppServices)


def _services(request) -> AppServices:
    return request.app[SERVICES_KEY]


async def _run_blocking(func, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func, *args)


async def _read_json(request) -> dict:
    data = await request.json()
    if not isinstance(data, dict):
        raise ValueError("request body must be a JSON object")
    return data


def _text_param(data: dict, name: str, default: str = "") -> str:
    value = data.get(name)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string")
    return value


def _error_status(err: Exception) -> int:
    if isinstance(err, ConfigNotFoundError):
        return 404
    if isinstance(err, (ValueError, StorageError)):
        return 400
    return 502


def _handle_errors(handler):
    @functools.wraps(handler)
    async def wrapper(request):
        try:
            return await handler(request)
        except (ValueError, StorageError, AIServiceError) as e:
            status = _error_status(e)
            logger.warning(f"{request.method} {request.path} failed ({status}): {e}")
            return web.json_response({"error": str(e)}, status=status)
    return wrapper


def _int_param(request, name) -> int:
    value = request.match_info[name]
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"invalid {name}: {value}")


async def _health(request):
    return web.json_response({"status": "ok", "app": "drama_gateway", "version": "1.0"})


# AI Config APIs

@_handle_errors
async def _list_configs(request):
    services = _services(request)
    service_type = request.query.get("service_type") or None

    def _list():
        with session_scope(services.session_factory) as db:
            return [c.to_dict() for c in AIConfigService(db).list_configs(service_type)]

    return web.json_response(await _run_blocking(_list))


@_handle_errors
async def _create_config(request):
    services = _services(request)
    data = await _read_json(request)

    def _create():
        with session_scope(services.session_factory) as db:
            return AIConfigService(db).create_config(data).to_dict()

    return web.json_response(await _run_blocking(_create), status=201)


@_handle_errors
async def _get_config(request):
    services = _services(request)
    config_id = _int_param(request, "config_id")

    def _get():
        with session_scope(services.session_factory) as db:
            config = AIConfigService(db).get_config(config_id)
            return config.to_dict() if config else None

    data = await _run_blocking(_get)
    if data is None:
        return web.json_response({"error": "config not found"}, status=404)
    return web.json_response(data)


@_handle_errors
async def _update_config(request):
    services = _services(request)
    config_id = _int_param(request, "config_id")
    updates = await _read_json(request)
    # Masked keys come back from the UI unchanged
    if str(updates.get("api_key", "")).endswith("****"):
        updates.pop("api_key")

    def _update():
        with session_scope(services.session_factory) as db:
            config = AIConfigService(db).update_config(config_id, updates)
            return config.to_dict() if config else None

    data = await _run_blocking(_update)
    if data is None:
        return web.json_response({"error": "config not found"}, status=404)
    return web.json_response(data)


@_handle_errors
async def _delete_config(request):
    services = _services(request)
    config_id = _int_param(request, "config_id")

    def _delete():
        with session_scope(services.session_factory) as db:
            return AIConfigService(db).delete_config(config_id)

    if not await _run_blocking(_delete):
        return web.json_response({"error": "config not found"}, status=404)
    return web.json_response({"message": "deleted"})


@_handle_errors
async def _test_config(request):
    services = _services(request)
    data = await _read_json(request)
    if not data.get("base_url") or not data.get("api_key"):
        raise ValueError("base_url and api_key are required")
    models = data.get("model") or []
    if isinstance(models, str):
        models = [models]

    await _run_blocking(
        functools.partial(
            services.dispatcher.test_connection,
            data.get("provider", ""),
            data["base_url"],
            data["api_key"],
            models,
            endpoint=data.get("endpoint", ""),
            service_type=data.get("service_type", "text"),
        )
    )
    return web.json_response({"message": "connection ok"})


# AI APIs

@_handle_errors
async def _generate_text(request):
    services = _services(request)
    data = await _read_json(request)
    prompt = _text_param(data, "prompt").strip()
    if not prompt:
        raise ValueError("prompt is required")

    text = await _run_blocking(
        functools.partial(
            services.dispatcher.generate_text,
            prompt,
            _text_param(data, "system_prompt"),
            temperature=data.get("temperature"),
            max_tokens=data.get("max_tokens"),
            model=data.get("model"),
        )
    )
    return web.json_response({"text": text})


@_handle_errors
async def _generate_images(request):
    services = _services(request)
    data = await _read_json(request)
    prompt = _text_param(data, "prompt").strip()
    if not prompt:
        raise ValueError("prompt is required")

    images = await _run_blocking(
        functools.partial(
            services.dispatcher.generate_image,
            prompt,
            data.get("size") or "1024x1024",
            int(data.get("n") or 1),
            model=data.get("model"),
        )
    )
    return web.json_response({"images": images})


@_handle_errors
async def _prompt_from_image(request):
    services = _services(request)
    data = await _read_json(request)
    prompt = await _run_blocking(
        functools.partial(services.dispatcher.describe_image, _text_param(data, "image_url"),
                          _text_param(data, "hint", None))
    )
    return web.json_response({"prompt": prompt})


@_handle_errors
async def _optimize_prompt(request):
    services = _services(request)
    data = await _read_json(request)
    prompt = await _run_blocking(
        functools.partial(services.dispatcher.optimize_image_prompt, _text_param(data, "prompt"), data.get("protected"))
    )
    return web.json_response({"prompt": prompt})


@_handle_errors
async def _normalize_prompt(request):
    services = _services(request)
    data = await _read_json(request)
    args = (_text_param(data, "prompt"), _text_param(data, "style"), _text_param(data, "reference"))
    mode = _text_param(data, "mode", "strict")
    if mode == "append":
        return web.json_response({"prompt": services.checker.append_style(*args), "violations": []})
    if mode != "strict":
        raise ValueError(f"unknown normalize mode: {mode}")

    result = services.checker.normalize(*args)
    return web.json_response({"prompt": result.prompt, "violations": result.violations})


# Prop APIs

@_handle_errors
async def _extract_props(request):
    services = _services(request)
    episode_id = request.match_info["episode_id"]
    data = await _read_json(request)
    task = await _run_blocking(services.props.extract_props, episode_id, _text_param(data, "script"))
    return web.json_response({"task_id": task.id, "status": task.status}, status=202)


@_handle_errors
async def _generate_prop_image(request):
    services = _services(request)
    prop_id = request.match_info["prop_id"]
    data = await _read_json(request)
    task = await _run_blocking(
        functools.partial(
            services.props.generate_prop_image,
            prop_id,
            _text_param(data, "prompt"),
            drama_id=data.get("drama_id"),
            style_prompt=_text_param(data, "style_prompt"),
            style=_text_param(data, "style"),
            reference_work=_text_param(data, "reference_work"),
        )
    )
    return web.json_response({"task_id": task.id, "status": task.status}, status=202)


# Generation APIs

@_handle_errors
async def _create_image_generation(request):
    services = _services(request)
    data = await _read_json(request)
    task, job = await _run_blocking(services.media.generate_image, data)
    return web.json_response({"task_id": task.id, "job": job}, status=202)


@_handle_errors
async def _create_video_generation(request):
    services = _services(request)
    data = await _read_json(request)
    task, job = await _run_blocking(services.media.generate_video, data)
    return web.json_response({"task_id": task.id, "job": job}, status=202)


async def _get_generation(request):
    services = _services(request)
    job = await _run_blocking(services.jobs.get_job, request.match_info["job_id"])
    if not job:
        return web.json_response({"error": "not found"}, status=404)
    return web.json_response(job)


# Task & Log APIs

async def _get_task_status(request):
    services = _services(request)
    task = await _run_blocking(services.orchestrator.get_task, request.match_info["task_id"])
    if not task:
        return web.json_response({"error": "not found"}, status=404)

    data = task.to_dict()
    data["task_id"] = data.pop("id")
    return web.json_response(data)


@_handle_errors
async def _get_logs_api(request):
    services = _services(request)
    task_id = request.query.get("task_id") or None
    resource_id = request.query.get("resource_id") or None
    level = request.query.get("level") or None
    limit = int(request.query.get("limit", 100))

    def _logs():
        with session_scope(services.session_factory) as db:
            logs = LogService(db).get_logs(task_id=task_id, resource_id=resource_id, level=level, limit=limit)
            return [entry.to_dict() for entry in logs]

    return web.json_response(await _run_blocking(_logs))


def create_app(services: AppServices = None) -> web.Application:
    services = services or AppServices()
    app = web.Application(client_max_size=1024 * 1024 * 20)
    app[SERVICES_KEY] = services

    @web.middleware
    async def request_logger(request, handler):
        start_time = time.time()
        logger.info(f"Incoming Request: {request.method} {request.path}")

        try:
            response = await handler(request)
            duration = (time.time() - start_time) * 1000
            logger.info(f"Request Completed: {request.method} {request.path} | Status: {response.status} | Time: {duration:.2f}ms")
            return response
        except web.HTTPException as ex:
            duration = (time.time() - start_time) * 1000
            logger.info(f"Request Failed (HTTPException): {request.method} {request.path} | Status: {ex.status} | Time: {duration:.2f}ms")
            raise
        except Exception as e:
            duration = (time.time() - start_time) * 1000
            logger.error(f"Request Error (Unhandled): {request.method} {request.path} | Error: {e} | Time: {duration:.2f}ms")
            raise

    app.middlewares.append(request_logger)

    app.router.add_get("/health", _health)

    # AI Config APIs
    app.router.add_get("/api/ai-configs", _list_configs)
    app.router.add_post("/api/ai-configs", _create_config)
    app.router.add_post("/api/ai-configs/test", _test_config)
    app.router.add_get("/api/ai-configs/{config_id}", _get_config)
    app.router.add_put("/api/ai-configs/{config_id}", _update_config)
    app.router.add_delete("/api/ai-configs/{config_id}", _delete_config)

    # AI APIs
    app.router.add_post("/api/ai/text", _generate_text)
    app.router.add_post("/api/ai/images", _generate_images)
    app.router.add_post("/api/ai/prompt-from-image", _prompt_from_image)
    app.router.add_post("/api/ai/optimize-prompt", _optimize_prompt)
    app.router.add_post("/api/prompts/normalize", _normalize_prompt)

    # Prop APIs
    app.router.add_post("/api/episodes/{episode_id}/props/extract", _extract_props)
    app.router.add_post("/api/props/{prop_id}/image", _generate_prop_image)

    # Generation APIs
    app.router.add_post("/api/generations/images", _create_image_generation)
    app.router.add_post("/api/generations/videos", _create_video_generation)
    app.router.add_get("/api/generations/{job_id}", _get_generation)

    # Task & Log APIs
    app.router.add_get("/api/tasks/{task_id}", _get_task_status)
    app.router.add_get("/api/logs", _get_logs_api)

    # Static Files
    app.router.add_static(services.storage.base_url, str(services.storage.base_path), show_index=False)
    return app


def start_server_in_thread(host: str, port: int, services: AppServices = None):
    def _runner():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        app = create_app(services)
        runner = web.AppRunner(app)
        loop.run_until_complete(runner.setup())
        site = web.TCPSite(runner, host, port)
        loop.run_until_complete(site.start())
        logger.info(f"HTTP服务已启动: http://{host}:{port}/")
        try:
            # Log system startup
            with session_scope(app[SERVICES_KEY].session_factory) as db:
                LogService(db).log(None, None, "INFO", f"System started at http://{host}:{port}/", module="system")
        except Exception as e:
            logger.error(f"Failed to write startup log: {e}")

        try:
            loop.run_forever()
        except KeyboardInterrupt:
            pass
        finally:
            loop.run_until_complete(runner.cleanup())

    t = threading.Thread(target=_runner, daemon=True)
    t.start()
    return t
