from typing import Optional
import redis.asyncio as aioredis
from rich.console import Console
from app.config.settings import config
from app.core.state import state

console = Console()

async def init_redis() -> Optional[aioredis.Redis]:
    """Connect to Redis; the service keeps working without it"""
    if not config.redis.url:
        console.print("[dim]Redis disabled (in-process rate limiting)[/dim]")
        state.redis = None
        return None

    try:
        redis_client = aioredis.from_url(
            config.redis.url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=config.redis.socket_timeout
        )
        await redis_client.ping()

        state.redis = redis_client
        console.print("[green]✓ Redis connected (rate limiting shared across workers)[/green]")

    except Exception as e:
        console.print(f"[yellow]⚠ Redis connection failed: {str(e)} (using in-process rate limiting)[/yellow]")
        state.redis = None

    return state.redis

def get_redis() -> Optional[aioredis.Redis]:
    """Get Redis client from state"""
    return state.redis

async def close_redis() -> None:
    """Close Redis connection"""
    if state.redis:
        await state.redis.aclose()
        state.redis = None
        console.print("[dim]✓ Redis connection closed[/dim]")
