from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from sqlalchemy.orm import Session
from examprep.core import config
from examprep.core.exceptions import AuthError
from examprep.db.session import SessionLocal
from examprep.db.models.user import User

# Tokens are issued by the external identity provider
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=config.AUTH_TOKEN_URL)


def get_db():
    """Database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def decode_access_token(token: str) -> str:
    """Return the user id (`sub`) of a valid identity provider token."""
    if not config.JWT_SECRET:
        raise AuthError("JWT_SECRET not configured")
    try:
        payload = jwt.decode(
            token,
            config.JWT_SECRET,
            algorithms=[config.JWT_ALGORITHM],
            audience=config.JWT_AUDIENCE,
            options={"verify_aud": bool(config.JWT_AUDIENCE)},
        )
    except JWTError as e:
        raise AuthError("Invalid token") from e

    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Token has no subject")
    return str(user_id)


def get_current_user(token: str = Depends(oauth2_scheme)) -> str:
    """Get current user id from JWT token."""
    try:
        return decode_access_token(token)
    except AuthError:
        raise HTTPException(
            status_code=401,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_current_user_obj(
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> User:
    """Get current User object from JWT token."""
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(
            status_code=404,
            detail="User not found"
        )
    return user
