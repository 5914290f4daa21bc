import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Any, Dict

from fastapi import FastAPI, HTTPException, Depends, Form, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, ConfigDict, Field, EmailStr, model_validator
from jose import jwt, JWTError
from passlib.context import CryptContext
from pymongo.errors import PyMongoError
from bson import ObjectId

import database
from config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES, CORS_ORIGINS
from database import get_db, create_document, get_documents
from realtime import get_pusher, publish_chat_message, authorize_presence, property_id_from_channel
from schemas import (
    User as UserSchema,
    Property as PropertySchema,
    ProjectUser,
    ProjectMember,
    ChatMessage,
    MAX_BSON_INT,
    funding_target,
)

logger = logging.getLogger(__name__)

# App and CORS
app = FastAPI(title="Build Together API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Report the first problem as a plain 400 message
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:])
    msg = first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content={"detail": f"{field}: {msg}" if field else msg})

# Helpers

def to_obj_id(id_str: str, label: str = "id") -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    return ObjectId(id_str)


def sanitize(doc: Dict) -> Dict:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d.pop("password_hash", None)
    return d


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def get_current_user(token: str = Depends(oauth2_scheme)) -> Dict[str, Any]:
    """Verified session from the bearer token: {id, name, email}."""
    credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception
    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception
    return {"id": user_id, "name": payload.get("name"), "email": payload.get("email")}


def store_failure(action: str) -> HTTPException:
    logger.exception("Database error while %s", action)
    return HTTPException(status_code=500, detail=f"An error occurred while {action}.")

# Request/Response Models
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    password: str = Field(..., min_length=1)

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]

class CreatePropertyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1, max_length=200)
    expected_members: int = Field(..., gt=1, le=MAX_BSON_INT)
    per_member_cost: float = Field(..., gt=0, allow_inf_nan=False)
    images: List[str] = Field(..., min_length=1)

    @model_validator(mode="after")
    def check_target_amount(self):
        funding_target(self.expected_members, self.per_member_cost)
        return self

class ChatRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    message: str = Field(..., min_length=1, max_length=2000)
    channel: str

# Auth Routes
@app.post("/register", status_code=201)
def register(payload: RegisterRequest, db=Depends(get_db)):
    try:
        if db["user"].find_one({"email": payload.email}):
            raise HTTPException(status_code=409, detail="User with this email already exists.")
        user_doc = UserSchema(
            name=payload.name,
            email=payload.email,
            password_hash=hash_password(payload.password),
        )
        uid = create_document(db, "user", user_doc)
    except PyMongoError:
        raise store_failure("registering")
    logger.info("Registered user %s", uid)
    return {"message": "User registered successfully.", "userId": uid}

@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest, db=Depends(get_db)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    token = create_access_token({"sub": str(user["_id"]), "name": user["name"], "email": user["email"]})
    return TokenResponse(access_token=token, user=sanitize(user))

@app.get("/me")
def me(current_user=Depends(get_current_user)):
    return current_user

# Property Routes
@app.get("/properties")
def list_properties(db=Depends(get_db)):
    try:
        docs = get_documents(db, "property", sort=[("created_at", -1)])
    except PyMongoError:
        raise store_failure("fetching properties")
    return [sanitize(d) for d in docs]

@app.post("/properties", status_code=201)
def create_property(payload: CreatePropertyRequest, current_user=Depends(get_current_user), db=Depends(get_db)):
    if not current_user.get("name"):
        raise HTTPException(status_code=401, detail="You must be logged in to create a project.")
    creator = ProjectUser(id=current_user["id"], name=current_user["name"])
    prop = PropertySchema(
        title=payload.title,
        description=payload.description,
        location=payload.location,
        images=payload.images,
        created_by=creator,
        admins=[creator],
        expected_members=payload.expected_members,
        per_member_cost=payload.per_member_cost,
    )
    try:
        new_id = create_document(db, "property", prop)
    except PyMongoError:
        raise store_failure("creating the project")
    logger.info("User %s created project %s (target %s)", creator.id, new_id, prop.target_amount)
    return {"message": "Project created successfully.", "projectId": new_id}

@app.get("/properties/{property_id}")
def get_property(property_id: str, db=Depends(get_db)):
    doc = db["property"].find_one({"_id": to_obj_id(property_id, "Project ID")})
    if not doc:
        raise HTTPException(status_code=404, detail="Project not found.")
    return sanitize(doc)

@app.post("/properties/{property_id}/join")
def join_property(property_id: str, current_user=Depends(get_current_user), db=Depends(get_db)):
    pid = to_obj_id(property_id, "Project ID")
    uid = current_user["id"]
    member = ProjectMember(id=uid, name=current_user.get("name")).model_dump()
    try:
        # Membership check and append in one update so concurrent joins cannot both land
        res = db["property"].update_one(
            {"_id": pid, "admins.id": {"$ne": uid}, "members.id": {"$ne": uid}},
            {"$push": {"members": member}, "$set": {"updated_at": member["joined_at"]}},
        )
        if res.modified_count == 0:
            exists = db["property"].find_one({"_id": pid}, {"_id": 1})
    except PyMongoError:
        raise store_failure("joining the project")
    if res.modified_count == 0:
        if not exists:
            raise HTTPException(status_code=404, detail="Project not found.")
        raise HTTPException(status_code=409, detail="You are already part of this project.")
    logger.info("User %s joined project %s", uid, property_id)
    return {"message": "Successfully joined project!"}

@app.get("/my-projects")
def my_projects(current_user=Depends(get_current_user), db=Depends(get_db)):
    uid = current_user["id"]
    try:
        docs = get_documents(
            db,
            "property",
            {"$or": [{"admins.id": uid}, {"members.id": uid}]},
            sort=[("created_at", -1)],
        )
    except PyMongoError:
        raise store_failure("fetching your projects")
    return [sanitize(d) for d in docs]

# Chat Routes
@app.post("/chat")
def send_chat_message(
    payload: ChatRequest,
    current_user=Depends(get_current_user),
    db=Depends(get_db),
    broker=Depends(get_pusher),
):
    if not current_user.get("name"):
        raise HTTPException(status_code=401, detail="Unauthorized")
    property_id = property_id_from_channel(payload.channel)
    if property_id is None:
        raise HTTPException(status_code=400, detail="Invalid channel")
    record = ChatMessage(user=current_user["name"], message=payload.message).model_dump()

    # Persist first; a failed broadcast afterwards leaves the stored message in place
    try:
        res = db["property"].update_one(
            {"_id": ObjectId(property_id)},
            {"$push": {"chat_messages": record}, "$set": {"updated_at": record["timestamp"]}},
        )
    except PyMongoError:
        raise store_failure("saving the message")
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Project not found.")

    try:
        publish_chat_message(broker, payload.channel, record)
    except Exception:
        logger.exception("Broadcast failed on %s after the message was stored", payload.channel)
        raise HTTPException(status_code=500, detail="Error sending message")
    return {"message": "Message sent"}

@app.post("/pusher/auth")
def pusher_auth(
    socket_id: str = Form(...),
    channel_name: str = Form(...),
    current_user=Depends(get_current_user),
    broker=Depends(get_pusher),
):
    if property_id_from_channel(channel_name) is None:
        raise HTTPException(status_code=400, detail="Invalid channel")
    logger.debug("Authorizing channel %s for socket %s", channel_name, socket_id)
    try:
        return authorize_presence(broker, socket_id, channel_name, current_user)
    except Exception:
        logger.exception("Pusher auth error for channel %s", channel_name)
        raise HTTPException(status_code=500, detail="Error authorizing channel")

# Utility endpoints
@app.get("/")
def root():
    return {"message": "Build Together API running"}

@app.get("/test")
def test_database():
    if database.db is None:
        return {"backend": "ok", "database": "missing", "collections": []}
    try:
        return {"backend": "ok", "database": "ok", "collections": database.db.list_collection_names()}
    except PyMongoError as e:
        return {"backend": "ok", "database": f"error: {str(e)[:80]}"}

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
