import json
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import Settings
from .errors import InvalidSubmission, Overloaded
from .executor import Dispatcher
from .schemas import ExecutionReport, ExecutionRequest


logger = logging.getLogger(__name__)


class _JsonFormatter(logging.Formatter):
    """One JSON object per line, safe for messages containing quotes or newlines."""

    def format(self, record):
        entry = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        execution_id = getattr(record, 'execution_id', None)
        if execution_id:
            entry['execution_id'] = execution_id
        if record.exc_info:
            entry['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(settings: Settings) -> None:
    handler = logging.StreamHandler()
    if settings.log_format == 'json':
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
    logging.basicConfig(level=settings.log_level, handlers=[handler], force=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    configure_logging(settings)
    app.state.dispatcher = Dispatcher(settings)
    logger.info(
        'judge ready: %d slot(s), strategies %s',
        settings.max_concurrency, app.state.dispatcher.selector.describe(),
    )
    yield


app = FastAPI(title='Code Judge Engine', lifespan=lifespan)


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


# def, not async def: execution blocks, so FastAPI runs it in its threadpool
@app.post('/execute', response_model=ExecutionReport)
def run_code(req: ExecutionRequest, dispatcher: Dispatcher = Depends(get_dispatcher)):
    try:
        report = dispatcher.submit(
            req.source_code,
            req.language,
            req.test_cases,
            req.function_name,
            req.time_limit_ms,
            req.memory_limit_mb,
        )
    except InvalidSubmission as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Overloaded as e:
        raise HTTPException(status_code=503, detail=str(e), headers={'Retry-After': str(e.retry_after_s)})
    except Exception:
        logger.exception('unhandled error while executing submission')
        raise HTTPException(status_code=500, detail='execution error')
    return JSONResponse(status_code=200, content=report.to_wire())


@app.get('/health')
def health(dispatcher: Dispatcher = Depends(get_dispatcher)):
    pool = dispatcher.pool
    return {
        'status': 'ok',
        'capacity': pool.capacity,
        'available': pool.available,
        'strategies': dispatcher.selector.describe(),
    }
