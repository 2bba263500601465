from fastapi import FastAPI, APIRouter, HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
import logging.handlers
import asyncio
from pathlib import Path
from datetime import datetime, timezone, timedelta
from passlib.context import CryptContext
from jose import JWTError, jwt
import certifi

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')
# Also load project root .env if present (e.g. when running from root)
load_dotenv(ROOT_DIR.parent / '.env')

import security as security_module
from casino import Casino
from config import MIN_BET_INTERVAL_SECONDS
from errors import CasinoError
from security import BetRateLimiter

# MongoDB connection (certifi CA bundle only needed for Atlas SSL, skip for localhost)
mongo_url = os.environ['MONGO_URL']
if 'mongodb+srv' in mongo_url or 'mongodb.net' in mongo_url:
    client = AsyncIOMotorClient(mongo_url, tlsCAFile=certifi.where())
else:
    client = AsyncIOMotorClient(mongo_url)
db = client[os.environ['DB_NAME']]

# Security
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

def _get_jwt_secret():
    """Require JWT_SECRET_KEY to be set and not a placeholder. Fail startup otherwise."""
    secret = os.environ.get('JWT_SECRET_KEY', '').strip()
    placeholders = (
        '',
        'your-secret-key-change-in-production',
        'your-secret-key-here',
        'GENERATE_NEW_SECRET_HERE',
    )
    if not secret or secret in placeholders:
        logging.getLogger(__name__).error(
            'JWT_SECRET_KEY must be set in .env to a secure random value. '
            'Do not use the placeholder. Refusing to start.'
        )
        raise SystemExit(1)
    return secret

SECRET_KEY = _get_jwt_secret()
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60

ADMIN_EMAILS = [e.strip().lower() for e in os.environ.get('ADMIN_EMAILS', '').split(',') if e.strip()]

security = HTTPBearer()

# One engine per process; request handlers and the round loop share it
casino = Casino(db)


def get_casino() -> Casino:
    return casino


app = FastAPI()


@app.get("/")
def root():
    """Root route so the service URL returns something instead of 404."""
    return {"message": "Casino API", "docs": "/docs", "api": "/api"}


api_router = APIRouter(prefix="/api")


# Helper functions
def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)

def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)

def create_access_token(data: dict):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

def casino_http_error(e: CasinoError) -> HTTPException:
    """Engine error -> HTTP error carrying the explicit reason."""
    return HTTPException(status_code=e.status_code, detail=e.message)

def is_admin(account: dict) -> bool:
    return bool(account.get("is_admin")) or (account.get("email") or "").lower() in ADMIN_EMAILS


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security),
                           c: Casino = Depends(get_casino)):
    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise HTTPException(status_code=401, detail="Invalid authentication credentials")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")

    account = await c.ledger.get_account(user_id, {"password_hash": 0, "settled_bets": 0})
    if account is None:
        raise HTTPException(status_code=401, detail="User not found")
    return account


async def get_admin_user(current_user: dict = Depends(get_current_user)):
    if not is_admin(current_user):
        raise HTTPException(status_code=403, detail="Admin only")
    return current_user


from routers import auth, games, account, admin, rpc

auth.register(api_router)
games.register(api_router)
account.register(api_router)
admin.register(api_router)
rpc.register(api_router)

app.include_router(api_router)

# CORS: with credentials=True you must list explicit origins (not "*").
_cors_origins = [o.strip() for o in os.environ.get('CORS_ORIGINS', '*').split(',') if o.strip()]
_allow_credentials = bool(_cors_origins) and '*' not in _cors_origins
if not _cors_origins:
    _cors_origins = ['*']

from security_middleware import SecurityMiddleware

app.add_middleware(
    SecurityMiddleware,
    get_db=lambda: get_casino().db,
    secret_key=SECRET_KEY,
    algorithm=ALGORITHM,
    bet_limiter=BetRateLimiter(MIN_BET_INTERVAL_SECONDS),
)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=_allow_credentials,
    allow_origins=_cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging with both file and console output
log_dir = ROOT_DIR / 'logs'
log_dir.mkdir(exist_ok=True)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        # Console output
        logging.StreamHandler(),
        # File output (creates new file daily, keeps last 30 days)
        logging.handlers.TimedRotatingFileHandler(
            log_dir / 'server.log',
            when='midnight',
            interval=1,
            backupCount=30,
            encoding='utf-8'
        )
    ]
)
logger = logging.getLogger(__name__)

_background_tasks = []


@app.on_event("startup")
async def startup_db():
    from ensure_indexes import ensure_all_indexes
    await ensure_all_indexes(db)
    await casino.seeds.get_or_create_daily_seed()
    await casino.reveal_seeds()
    if os.environ.get('ROUND_LOOP_ENABLED', '1') == '1':
        _background_tasks.append(asyncio.create_task(casino.run_round_loop()))
    else:
        logger.info("Round loop disabled (ROUND_LOOP_ENABLED != 1)")
    _background_tasks.append(asyncio.create_task(security_module.security_monitor_task(db)))


@app.on_event("shutdown")
async def shutdown_db_client():
    for task in _background_tasks:
        task.cancel()
    client.close()
