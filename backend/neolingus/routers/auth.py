from datetime import datetime, timedelta, timezone
from typing import Optional
import logging
import uuid

from fastapi import APIRouter, HTTPException, Depends
from fastapi.security import OAuth2PasswordRequestForm, OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from ..settings import settings
from sqlalchemy.orm import Session
from ..db import get_db
from ..models import AuthUser, AuthSession, utcnow

router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger(__name__)
logging.getLogger('passlib').setLevel(logging.ERROR)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

ADMIN_ROLES = ("admin", "super_admin")


class Token(BaseModel):
	access_token: str
	token_type: str = "bearer"


class User(BaseModel):
	username: str
	role: str = "student"
	tenant_id: str = "neolingus"

	@property
	def is_admin(self) -> bool:
		return self.role in ADMIN_ROLES


def hash_password(password: str) -> str:
	# bcrypt only looks at the first 72 bytes
	password_bytes = password.encode('utf-8')[:72]
	return pwd_context.hash(password_bytes.decode('utf-8', errors='ignore'))


def verify_password(plain_password: str, hashed_password: str) -> bool:
	return pwd_context.verify(plain_password.encode('utf-8')[:72].decode('utf-8', errors='ignore'), hashed_password)


def _to_user(row: AuthUser) -> User:
	return User(username=row.username, role=row.role or "student", tenant_id=row.tenant_id or settings.default_tenant)


def _ensure_seed_user(db: Session, username: str, password: str) -> Optional[AuthUser]:
	"""The configured seed account becomes a DB-backed admin on its first login."""
	if not settings.seed_username or username != settings.seed_username or password != settings.seed_password_plain:
		return None
	row = db.get(AuthUser, username)
	if row is None:
		row = AuthUser(
			username=username,
			password_hash=hash_password(password),
			role="admin",
			tenant_id=settings.default_tenant,
			requests_limit=settings.default_requests_limit,
		)
		db.add(row)
		db.commit()
		logger.info("Created seed admin %s", username)
	return row


def authenticate_user(db: Session, username: str, password: str) -> Optional[User]:
	row = db.get(AuthUser, username)
	if row and verify_password(password, row.password_hash):
		return _to_user(row)
	seeded = _ensure_seed_user(db, username, password)
	if seeded is not None:
		return _to_user(seeded)
	return None


def _resolve_expiry(expires_delta: Optional[timedelta]) -> datetime:
	delta = expires_delta
	if delta is None:
		minutes = settings.access_token_expire_minutes
		delta = timedelta(minutes=minutes) if minutes > 0 else timedelta(days=30)
	now = datetime.now(timezone.utc)
	try:
		return now + delta
	except OverflowError:
		return datetime.max.replace(tzinfo=timezone.utc)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
	to_encode = data.copy()
	to_encode.update({"exp": _resolve_expiry(expires_delta)})
	return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def open_session(db: Session, username: str) -> str:
	"""Persist a server-side session and return a token bound to it."""
	session_id = uuid.uuid4().hex
	db.add(AuthSession(session_id=session_id, username=username))
	db.commit()
	return create_access_token({"sub": username, "jti": session_id})


@router.post("/token", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	user = authenticate_user(db, form_data.username, form_data.password)
	if not user:
		raise HTTPException(status_code=401, detail="Incorrect username or password")
	return Token(access_token=open_session(db, user.username))


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
	credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
		username: str | None = payload.get("sub")
		jti: str | None = payload.get("jti")
		if username is None or jti is None:
			raise credentials_exception
	except JWTError:
		raise credentials_exception
	# The session row must still exist so that revoked sessions are rejected
	row = db.get(AuthSession, jti)
	if not row or row.username != username:
		raise credentials_exception
	user_row = db.get(AuthUser, username)
	if user_row is None:
		raise credentials_exception
	row.last_activity_at = utcnow()
	db.commit()
	return _to_user(user_row)


def require_admin(user: User = Depends(get_current_user)) -> User:
	if not user.is_admin:
		raise HTTPException(status_code=403, detail="Admin access required")
	return user


def consume_request(db: Session, username: str) -> None:
	"""Spend one unit of the caller's request quota; 429 once it is exhausted."""
	row = db.get(AuthUser, username)
	if row is None:
		return
	if row.requests_used >= row.requests_limit:
		raise HTTPException(status_code=429, detail="request limit reached")
	row.requests_used += 1
	db.commit()


def refund_request(db: Session, username: str) -> None:
	row = db.get(AuthUser, username)
	if row is not None and row.requests_used > 0:
		row.requests_used -= 1
		db.commit()


@router.get("/me", response_model=User)
async def me(user: User = Depends(get_current_user)):
	return user


class RegisterRequest(BaseModel):
	username: str
	password: str
	email: Optional[str] = None


@router.post("/register", status_code=201)
async def register(req: RegisterRequest, db: Session = Depends(get_db)):
	username = (req.username or "").strip()
	password = req.password or ""
	if not username or not password:
		raise HTTPException(status_code=400, detail="username and password are required")
	if len(username) < 3 or len(username) > 128:
		raise HTTPException(status_code=400, detail="username must be 3-128 characters")
	if len(password) < 8:
		raise HTTPException(status_code=400, detail="password must be at least 8 characters")
	if db.get(AuthUser, username) is not None:
		raise HTTPException(status_code=409, detail="username already exists")
	row = AuthUser(
		username=username,
		password_hash=hash_password(password),
		email=(req.email or "").strip() or None,
		role="student",
		tenant_id=settings.default_tenant,
		requests_limit=settings.default_requests_limit,
	)
	db.add(row)
	db.commit()
	return {"ok": True}
