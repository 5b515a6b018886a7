# app/main.py
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

# Local imports
import config
from agent import answer_query
from auth import (
    create_access_token,
    exchange_google_code,
    get_current_user,
    google_authorize_url,
    google_enabled,
    hash_password,
    verify_password,
    verify_state,
)
from db import (
    User,
    available_username,
    create_user,
    find_by_google_id_or_email,
    find_by_username,
    find_by_username_or_email,
    get_db,
    init_db,
)
from indexer import collection_name, reset_collection
from qna import prepare_qna_inputs, validate_query

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    config.setup_logging()
    init_db()
    yield


# -----------------------------
# FastAPI App
# -----------------------------
app = FastAPI(
    title="GitAI Repository Chat",
    version="1.0.0",
    description="Auth endpoints and retrieval-augmented QnA over a cloned git repository.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------
# Error Handlers
# -----------------------------
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    # the client reads ``error`` from every failed response
    content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


# -----------------------------
# Root
# -----------------------------
@app.get("/")
def read_root():
    return {"status": "GitAI backend is running"}


# -----------------------------
# Models
# -----------------------------
class SignupRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=150)
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=1)


class LoginRequest(BaseModel):
    username: str
    password: str


class LoginResponse(BaseModel):
    id: int
    username: str
    token: str


class QueryRequest(BaseModel):
    query: str = Field(..., description="Natural-language question")
    repoLink: Optional[str] = Field(None, description="Git repository URL")
    userId: Optional[str] = None


class QueryResponse(BaseModel):
    response: str
    sources: List[str]


class ResetRequest(BaseModel):
    repoLink: str = Field(..., description="Git repository URL")


# -----------------------------
# Health
# -----------------------------
@app.get("/health")
def health():
    return {"status": "ok"}


# -----------------------------
# Auth Endpoints
# -----------------------------
@app.post("/signup", status_code=201)
def signup(req: SignupRequest, db: Session = Depends(get_db)):
    if find_by_username_or_email(db, req.username, req.email):
        raise HTTPException(status_code=400, detail="Username or email already exists")
    try:
        password_hash = hash_password(req.password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        user = create_user(db, req.username, email=req.email, password_hash=password_hash)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Error during signup")
        raise HTTPException(status_code=500, detail="Server error")
    return {"message": "User created successfully", "userId": user.id}


@app.post("/login", response_model=LoginResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    user = find_by_username(db, req.username)
    if user is None:
        raise HTTPException(status_code=401, detail="Account not Found!")
    if not verify_password(req.password, user.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    try:
        token = create_access_token(user)
    except ValueError:
        logger.exception("Cannot issue token")
        raise HTTPException(status_code=500, detail="Server error")
    return LoginResponse(id=user.id, username=user.username, token=token)


@app.post("/verify-token")
def verify_token(claims: dict = Depends(get_current_user), db: Session = Depends(get_db)):
    user_id = claims.get("userId")
    user = db.get(User, user_id) if user_id is not None else None
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": user.to_dict()}


@app.get("/auth/google")
def google_login():
    if not google_enabled():
        raise HTTPException(status_code=501, detail="Google login not configured")
    return RedirectResponse(google_authorize_url(), status_code=302)


@app.get("/auth/google/callback")
async def google_callback(code: Optional[str] = None, state: Optional[str] = None,
                          error: Optional[str] = None, db: Session = Depends(get_db)):
    if not google_enabled():
        raise HTTPException(status_code=501, detail="Google login not configured")

    failure = RedirectResponse(f"{config.FRONTEND_URL}/login?error=auth_failed", status_code=302)
    if error or not code or not state:
        logger.warning("Google callback without code/state (error=%s)", error)
        return failure

    try:
        verify_state(state)
        profile = await exchange_google_code(code)
        email = profile.get("email")
        user = find_by_google_id_or_email(db, profile["sub"], email)
        if user is None:
            username = available_username(db, profile.get("name") or (email or "").split("@")[0])
            user = create_user(db, username, email=email, google_id=profile["sub"])
        elif not user.google_id:
            user.google_id = profile["sub"]
            db.commit()
        token = create_access_token(user)
    except (ValueError, httpx.HTTPError, SQLAlchemyError) as e:
        db.rollback()
        logger.warning("OAuth callback error: %s", e)
        return failure

    return RedirectResponse(f"{config.FRONTEND_URL}/gitrepo?token={token}", status_code=302)


# -----------------------------
# QnA Endpoint
# -----------------------------
@app.post("/query", response_model=QueryResponse)
def query(req: QueryRequest, claims: dict = Depends(get_current_user)):
    try:
        question = validate_query(req.query)
        if not req.repoLink:
            raise ValueError("Repository link is required")
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"error": "Request failed", "details": str(e)})

    try:
        prepared = prepare_qna_inputs(question, req.repoLink)
        chunks = prepared["context"]
        answer = answer_query(question, chunks)
    except Exception as e:
        logger.exception("Error processing request for user %s", claims.get("username"))
        raise HTTPException(status_code=500, detail={"error": "Request failed", "details": str(e)})

    sources = []
    for c in chunks:
        path = c["metadata"].get("path")
        if path and path not in sources:
            sources.append(path)
    return QueryResponse(response=answer, sources=sources)


# -----------------------------
# Reset Endpoint
# -----------------------------
@app.post("/reset")
def reset_index(req: ResetRequest, claims: dict = Depends(get_current_user)):
    try:
        name = collection_name(req.repoLink)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    deleted = reset_collection(req.repoLink)
    logger.info("User %s reset index %s (deleted=%s)", claims.get("username"), name, deleted)
    if deleted:
        return {"status": f"reset collection '{name}' done", "deleted": True}
    return {"status": f"no index for '{name}'", "deleted": False}


# -----------------------------
# Main Entrypoint
# -----------------------------
if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
