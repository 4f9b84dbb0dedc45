"""
Authentication middleware with local JWT validation
"""
import jwt
from fastapi import HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import os
import logging
from supabase import create_client, Client
from datetime import datetime, timedelta, timezone
from dotenv import load_dotenv

# Load environment variables first
load_dotenv()

logger = logging.getLogger(__name__)

# JWT settings
JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET")
JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"

security = HTTPBearer()


class AuthMiddleware:
    def __init__(self, supabase_client: Client = None):
        if supabase_client is None:
            supabase_url = os.getenv("SUPABASE_URL")
            supabase_key = os.getenv("SUPABASE_SERVICE_KEY")

            if not supabase_url:
                raise ValueError("SUPABASE_URL environment variable is required")
            if not supabase_key:
                raise ValueError("SUPABASE_SERVICE_KEY environment variable is required")
            supabase_client = create_client(supabase_url, supabase_key)

        if not JWT_SECRET:
            raise ValueError("SUPABASE_JWT_SECRET environment variable is required")

        self.supabase: Client = supabase_client
        logger.info("Supabase client initialized with local JWT validation")

    async def verify_token(self, credentials: HTTPAuthorizationCredentials) -> dict:
        """
        Verify JWT token locally without round-trip to Supabase
        """
        try:
            payload = jwt.decode(
                credentials.credentials,
                JWT_SECRET,
                algorithms=[JWT_ALGORITHM],
                audience=JWT_AUDIENCE
            )
        except jwt.ExpiredSignatureError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has expired"
            )
        except jwt.InvalidAudienceError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token audience"
            )
        except jwt.InvalidSignatureError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token signature"
            )
        except jwt.PyJWTError as e:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=f"Invalid token: {str(e)}"
            )

        user_id = payload.get("sub")
        email = payload.get("email")

        if not user_id or not email:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token: missing user information"
            )

        app_metadata = payload.get("app_metadata") or {}
        return {
            "id": user_id,
            "email": email,
            "role": app_metadata.get("role", "user"),
        }

    def create_access_token(self, user_id: str, email: str, role: str = "user") -> str:
        """
        Create JWT access token (for service and admin tooling)
        """
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "email": email,
            "aud": JWT_AUDIENCE,
            "app_metadata": {"role": role},
            "exp": now + timedelta(hours=24),
            "iat": now
        }

        return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


# Global auth middleware instance - will be initialized when imported
auth_middleware = None


def get_auth_middleware():
    """Get or create auth middleware instance"""
    global auth_middleware
    if auth_middleware is None:
        auth_middleware = AuthMiddleware()
    return auth_middleware
