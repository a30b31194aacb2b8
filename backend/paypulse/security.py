import jwt
from datetime import datetime, timedelta, timezone
from paypulse.config import settings
from fastapi import HTTPException

def create_jwt_token(user_id: int) -> str:
    payload = {
        "sub": str(user_id),  # PyJWT requires a string subject
        "exp": datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

def verify_jwt_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {str(e)}")
    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Token missing subject")
    return payload
