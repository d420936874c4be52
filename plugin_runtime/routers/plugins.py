"""Plugin control panel REST API endpoints.

These endpoints run in the panel context. They reach the runtime only through
MessageBroker requests to the page context, never by calling it directly.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from plugin_runtime.constants import PAGE_CONTEXT
from plugin_runtime.dependencies import get_control_channel
from plugin_runtime.plugins.config import CORE_NAMESPACE
from plugin_runtime.plugins.errors import BrokerDestroyed, RequestFailed, RequestTimeout, TransportError
from plugin_runtime.plugins.ipc import MessageBroker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/plugins", tags=["plugins"])


class SettingUpdate(BaseModel):
    """Request body for changing one setting."""

    value: Any = None


async def _request(channel: MessageBroker, action: str, data: Any = None) -> Any:
    try:
        return await channel.request(action, data, target=PAGE_CONTEXT)
    except RequestTimeout as e:
        logger.warning(f"Runtime did not answer {action}: {e}")
        raise HTTPException(status_code=504, detail=str(e))
    except (BrokerDestroyed, TransportError) as e:
        raise HTTPException(status_code=503, detail=str(e))
    except RequestFailed as e:
        raise HTTPException(status_code=400, detail=e.message)


async def _require_plugin(channel: MessageBroker, plugin_id: str) -> Dict[str, Any]:
    info = await _request(channel, "plugin:getInfo", {"plugin_id": plugin_id})
    if not info:
        raise HTTPException(status_code=404, detail=f"Plugin '{plugin_id}' not found")
    return info


async def _command(channel: MessageBroker, plugin_id: str, verb: str) -> Dict[str, Any]:
    await _require_plugin(channel, plugin_id)
    result = await _request(channel, f"plugin:{verb}", {"plugin_id": plugin_id})
    plugin = result.get("plugin") or {}
    if not result.get("success"):
        detail = plugin.get("error") or f"Failed to {verb} plugin '{plugin_id}'"
        raise HTTPException(status_code=400, detail=detail)
    return {"message": f"Plugin '{plugin_id}' {verb.rstrip('e')}ed", "plugin": plugin}


@router.get("/")
async def list_plugins(channel: MessageBroker = Depends(get_control_channel)):
    """List all registered plugins and their state."""
    return {"plugins": await _request(channel, "plugins:getAll")}


@router.get("/{plugin_id}")
async def get_plugin(plugin_id: str, channel: MessageBroker = Depends(get_control_channel)):
    """Get detailed information about a specific plugin."""
    return await _require_plugin(channel, plugin_id)


@router.post("/{plugin_id}/enable")
async def enable_plugin(plugin_id: str, channel: MessageBroker = Depends(get_control_channel)):
    """Enable a plugin. Persists the flag and starts it immediately."""
    return await _command(channel, plugin_id, "enable")


@router.post("/{plugin_id}/disable")
async def disable_plugin(plugin_id: str, channel: MessageBroker = Depends(get_control_channel)):
    """Disable a plugin. Persists the flag and stops it immediately."""
    return await _command(channel, plugin_id, "disable")


@router.post("/{plugin_id}/reload")
async def reload_plugin(plugin_id: str, channel: MessageBroker = Depends(get_control_channel)):
    """Stop and start an active plugin."""
    return await _command(channel, plugin_id, "reload")


@router.get("/{plugin_id}/settings")
async def get_plugin_settings(plugin_id: str, channel: MessageBroker = Depends(get_control_channel)):
    """Current settings and schema of a plugin ('core' for runtime settings)."""
    settings = await _request(channel, "settings:get", {"plugin_id": plugin_id})
    if settings is None:
        raise HTTPException(status_code=404, detail=f"Plugin '{plugin_id}' not found")
    return settings


@router.put("/{plugin_id}/settings/{key}")
async def update_plugin_setting(
    plugin_id: str,
    key: str,
    body: SettingUpdate,
    channel: MessageBroker = Depends(get_control_channel),
):
    """Change one setting. Invalid values are rejected with 400."""
    if plugin_id != CORE_NAMESPACE:
        await _require_plugin(channel, plugin_id)
    result = await _request(
        channel,
        "settings:change",
        {"plugin_id": plugin_id, "key": key, "value": body.value},
    )
    return {"message": f"Setting '{key}' updated for '{plugin_id}'", **result}
