"""The panel's state tree: its initial shape and the game events that edit it.

`build_server_data()` creates the plain tree a `SyncService` is started
with. The remaining functions are the domain writes game events perform on
the observed tree (players joining, chat lines, scoreboard changes, ...).
They use nothing but ordinary item assignment and deletion; the patches
reach the dashboards on their own.

Tree layout (abridged):

    status                      0 while starting, 1 once the server runs
    machine   {os, name, network{ip, port}}
    process   {sessionId, pid, cwd, user, usage{cpu[], ram[]}}
    server    {version, protocol, uptime, announcement{...}, info{...},
               plugins[], onlinePlugins[], logs{chat[], commands[], console[]},
               game{tps, players{uuid: ...}, objectives{name: ...},
                    permissions, options{category: {name: ...}}}}
"""

import base64
import html
import json
import logging
import os
import platform
import re
import struct
import zlib
from enum import IntEnum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from . import logger
from .config import PanelConfig
from .observed import ObservedDict, ObservedList
from .utils import now_ms, detect_address, detect_hostname, detect_user

OFFLINE_NAME = "Player Offline"

GAME_RULES = "Game Rules"
WORLD = "World"


class OptionType(IntEnum):
    """Value type of a game option, numbered like the game's own rule types."""
    BOOL = 1
    INT = 2
    FLOAT = 3


def build_server_data(config: PanelConfig) -> Dict[str, Any]:
    """Returns the initial plain state tree for a freshly started panel."""
    return {
        "status": 0,
        "machine": {
            "os": f"{platform.system()} {platform.release()}".strip(),
            "name": detect_hostname(),
            "network": {
                "ip": detect_address(),
                "port": config.game_port,
            },
        },
        "process": {
            "sessionId": "",
            "pid": os.getpid(),
            "cwd": os.getcwd(),
            "user": detect_user(),
            "usage": {
                "cpu": [],
                "ram": [],
            },
        },
        "server": {
            "version": "0.0.0",
            "protocol": 0,
            "uptime": 0,
            "announcement": {
                "name": "",
                "level": "",
                "players": {"current": 0, "max": 0},
            },
            "info": {
                "name": config.server_name,
                "level": config.level_name,
                "players": {"current": 0, "max": config.max_players},
            },
            "plugins": [],
            "onlinePlugins": [],
            "logs": {
                "chat": [],
                "commands": [],
                "console": [],
            },
            "game": {
                "tps": 0,
                "players": {},
                "objectives": {},
                "permissions": [],
                "options": {
                    GAME_RULES: {},
                    WORLD: {
                        "allow-cheats": _option("Allow Cheats", OptionType.BOOL, False),
                    },
                },
            },
        },
    }


# --- Formatting ---

_COLOR_CODE = re.compile(r"§([0-9a-gk-or])", re.IGNORECASE)

_COLORS = {
    "0": "#000000", "1": "#0000AA", "2": "#00AA00", "3": "#00AAAA",
    "4": "#AA0000", "5": "#AA00AA", "6": "#FFAA00", "7": "#AAAAAA",
    "8": "#555555", "9": "#5555FF", "a": "#55FF55", "b": "#55FFFF",
    "c": "#FF5555", "d": "#FF55FF", "e": "#FFFF55", "f": "#FFFFFF",
    "g": "#DDD605",
}

_FORMATS = {
    "l": "font-weight:bold",
    "o": "font-style:italic",
    "n": "text-decoration:underline",
    "m": "text-decoration:line-through",
}


def format_color_codes(text: str) -> str:
    """Converts Minecraft `§` formatting codes into HTML spans.

    The text itself is HTML-escaped. A color code resets any bold/italic
    formatting before it, `§r` resets everything, and `§k` is dropped.

        >>> format_color_codes("§aGreen §lbold")
        '<span style="color:#55FF55">Green </span><span style="color:#55FF55;font-weight:bold">bold</span>'
    """
    parts = _COLOR_CODE.split(text)
    out = [html.escape(parts[0])]
    color: Optional[str] = None
    formats: List[str] = []
    for code, segment in zip(parts[1::2], parts[2::2]):
        code = code.lower()
        if code in _COLORS:
            color = _COLORS[code]
            formats = []
        elif code in _FORMATS:
            if _FORMATS[code] not in formats:
                formats.append(_FORMATS[code])
        elif code == "r":
            color = None
            formats = []
        if not segment:
            continue
        styles = ([f"color:{color}"] if color else []) + formats
        if styles:
            out.append(f'<span style="{";".join(styles)}">{html.escape(segment)}</span>')
        else:
            out.append(html.escape(segment))
    return "".join(out)


def format_plugin_name(name: str) -> str:
    """"@scope/my-plugin" -> "My Plugin"."""
    base = name.rsplit("/", 1)[-1]
    return " ".join(word.capitalize() for word in re.split(r"[-_]", base) if word)


# --- Logs ---

def _append_capped(entries: ObservedList, entry: Dict[str, Any], limit: int) -> None:
    while len(entries) >= limit:
        entries.pop(0)
    entries.append(entry)


def record_chat(tree: ObservedDict, name: str, message: str, limit: int = 500) -> None:
    _append_capped(tree["server"]["logs"]["chat"], {
        "name": name,
        "message": format_color_codes(message),
        "time": now_ms(),
    }, limit)


def record_command(tree: ObservedDict, name: str, command: str, limit: int = 500) -> None:
    _append_capped(tree["server"]["logs"]["commands"], {
        "name": name,
        "command": command,
        "time": now_ms(),
    }, limit)


def record_console(tree: ObservedDict, line: str, limit: int = 500) -> None:
    _append_capped(tree["server"]["logs"]["console"], {
        "log": html.escape(line),
        "time": now_ms(),
    }, limit)


# --- Players ---

def add_player(
    tree: ObservedDict,
    uuid: str,
    name: str,
    xuid: str = "",
    ip: str = "",
    device: Optional[Mapping[str, Any]] = None,
    version: str = "",
    lang: str = "",
    skin: Optional[Mapping[str, Any]] = None,
    scoreboard_id: Optional[int] = None,
) -> None:
    """Adds a player who just logged in.

    `skin` is the client's skin attachment (base64 fields as sent by the game
    client). It is decoded after the player entry exists; if decoding fails
    the player stays listed with an empty `skin.head` and a warning is logged.
    """
    device = device or {}
    player: Dict[str, Any] = {
        "name": name,
        "uuid": uuid,
        "xuid": xuid,
        "ip": ip.split("|")[0],
        "skin": {"head": ""},
        "device": {
            "type": device.get("type", 0),
            "model": device.get("model", ""),
            "id": device.get("id", ""),
        },
        "version": version,
        "lang": lang,
    }
    if scoreboard_id is not None:
        player["scoreboardId"] = scoreboard_id
    tree["server"]["game"]["players"][uuid] = player
    if skin is None:
        return
    try:
        head = decode_skin_head(skin)
    except (KeyError, IndexError, TypeError, ValueError, StopIteration) as e:
        logger.warning(f"Failed to parse {name}'s skin data. It will not be seen in the Players panel. ({type(e).__name__}: {e})")
        return
    tree["server"]["game"]["players"][uuid]["skin"]["head"] = head


def remove_player(tree: ObservedDict, uuid: str) -> bool:
    """Removes a player who left, marking their scoreboard entries offline.

    Returns:
        bool: False if the player was not listed.
    """
    players = tree["server"]["game"]["players"]
    player = players.get(uuid)
    if player is None:
        return False
    scoreboard_id = player.get("scoreboardId")
    if scoreboard_id is not None:
        key = str(scoreboard_id)
        for objective in tree["server"]["game"]["objectives"].values():
            if key in objective["scores"]:
                objective["scores"][key]["name"] = OFFLINE_NAME
    del players[uuid]
    return True


def default_game_info() -> Dict[str, Any]:
    return {
        "ping": -1,
        "pos": {"x": 0, "y": 0, "z": 0},
        "rot": {"x": 0, "y": 0},
        "biome": "",
        "lvl": 0,
        "health": {"current": 20, "max": 20},
        "food": {"current": 20, "max": 20},
    }


# --- Scoreboard ---

def set_objective(tree: ObservedDict, name: str, display_name: Optional[str] = None) -> None:
    tree["server"]["game"]["objectives"][name] = {
        "displayName": format_color_codes(display_name if display_name is not None else name),
        "pinned": "",
        "scores": {},
    }


def set_score(tree: ObservedDict, objective: str, score_id: Any, holder: Optional[str], value: Any) -> None:
    """Sets one score, creating the objective if it is not known yet."""
    objectives = tree["server"]["game"]["objectives"]
    if objective not in objectives:
        set_objective(tree, objective)
    objectives[objective]["scores"][str(score_id)] = {
        "name": format_color_codes(holder or OFFLINE_NAME),
        "value": value,
    }


def reset_score(tree: ObservedDict, objective: str, score_id: Any) -> None:
    objectives = tree["server"]["game"]["objectives"]
    if objective in objectives:
        del objectives[objective]["scores"][str(score_id)]


# --- Options ---

def set_option_value(tree: ObservedDict, category: str, name: str, value: Any) -> bool:
    """Updates the value of a known game option. Returns False if it is unknown."""
    options = tree["server"]["game"]["options"]
    option = options.get(category, {}).get(name)
    if option is None:
        return False
    option["value"] = value
    return True


def set_announcement(tree: ObservedDict, name: str, level: str, current: int, maximum: int) -> None:
    announcement = tree["server"]["announcement"]
    announcement["name"] = format_color_codes(name)
    announcement["level"] = format_color_codes(level)
    announcement["players"]["current"] = current
    announcement["players"]["max"] = maximum


def _option(display_name: str, option_type: OptionType, value: Any) -> Dict[str, Any]:
    return {"displayName": display_name, "type": int(option_type), "value": value}


def _rule_display_name(rule_id: str) -> str:
    """"doDaylightCycle" -> "Do Daylight Cycle"."""
    words = re.sub(r"(?<!^)(?=[A-Z])", " ", rule_id).split()
    return " ".join(word[:1].upper() + word[1:] for word in words)


def set_game_rules(tree: ObservedDict, rules: Mapping[str, Mapping[str, Any]]) -> None:
    """Replaces the "Game Rules" option category.

    `rules` maps each rule id to its `type` (an `OptionType`) and current
    `value`; a `displayName` is derived from the id when not given.
    """
    tree["server"]["game"]["options"][GAME_RULES] = {
        rule_id: _option(rule.get("displayName") or _rule_display_name(rule_id), OptionType(rule["type"]), rule["value"])
        for rule_id, rule in rules.items()
    }


def set_world_options(tree: ObservedDict, allow_cheats: bool) -> None:
    """Updates the "World" option category."""
    world = tree["server"]["game"]["options"].setdefault(WORLD, {})
    if "allow-cheats" in world:
        world["allow-cheats"]["value"] = allow_cheats
    else:
        world["allow-cheats"] = _option("Allow Cheats", OptionType.BOOL, allow_cheats)


def load_permissions(tree: ObservedDict, path: str) -> bool:
    """Mirrors a permissions file into `server.game.permissions`.

    Returns:
        bool: False if the file is missing, unreadable or not valid JSON.
            The current permissions are kept in that case.
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            permissions = json.load(f)
    except FileNotFoundError:
        logger.debug(f"No permissions file at '{path}'.")
        return False
    except (OSError, ValueError) as e:
        logger.warning(f"Could not load permissions from '{path}': {e}")
        return False
    tree["server"]["game"]["permissions"] = permissions
    return True


# --- Plugins ---

_MANIFEST_FIELDS = ("name", "version", "description", "keywords", "author", "license")


def set_plugins(tree: ObservedDict, manifests: Iterable[Mapping[str, Any]]) -> None:
    """Lists the plugins the server has loaded, from their package manifests."""
    tree["server"]["plugins"] = [
        {"name": manifest["name"], "json": {key: manifest.get(key) for key in _MANIFEST_FIELDS}}
        for manifest in manifests
    ]


def set_online_plugins(tree: ObservedDict, results: Iterable[Mapping[str, Any]]) -> None:
    """Lists the published plugins that are not loaded.

    `results` are package index search results, each with a `package`
    mapping naming the plugin. Results without a name are skipped.
    """
    loaded = {plugin["name"] for plugin in tree["server"]["plugins"]}
    available = []
    for result in results:
        name = (result.get("package") or {}).get("name")
        if name and name not in loaded:
            available.append(result)
    tree["server"]["onlinePlugins"] = available


# --- Watched players ---

class WatchedPlayers:
    """The players whose live game info is followed by at least one dashboard.

    Shared by every session of a server. Each dashboard that watches a player
    counts once; the player stops being watched when the last one lets go.
    """

    def __init__(self):
        self._watchers: Dict[str, int] = {}

    def add(self, uuid: str) -> None:
        self._watchers[uuid] = self._watchers.get(uuid, 0) + 1

    def discard(self, uuid: str) -> None:
        count = self._watchers.get(uuid, 0)
        if count > 1:
            self._watchers[uuid] = count - 1
        else:
            self._watchers.pop(uuid, None)

    def forget(self, uuid: str) -> None:
        """Stops watching a player for every dashboard (the player left)."""
        self._watchers.pop(uuid, None)

    def __contains__(self, uuid: object) -> bool:
        return uuid in self._watchers

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._watchers))

    def __len__(self) -> int:
        return len(self._watchers)


def update_game_info(tree: ObservedDict, watched: WatchedPlayers, uuid: str, changes: Mapping[str, Any]) -> bool:
    """Writes live details of a watched player into their `gameInfo`.

    Sections such as `pos` or `health` are updated field by field, so a
    movement only patches the coordinates that were given.

    Returns:
        bool: False if nobody watches the player or they have no game info.
    """
    if uuid not in watched:
        return False
    player = tree["server"]["game"]["players"].get(uuid)
    if player is None or "gameInfo" not in player:
        return False
    info = player["gameInfo"]
    for key, value in changes.items():
        section = info.get(key)
        if isinstance(section, ObservedDict) and isinstance(value, Mapping):
            for field, field_value in value.items():
                section[field] = field_value
        else:
            info[key] = value
    return True


# --- Skins ---

def _b64json(data: str) -> Any:
    return json.loads(base64.b64decode(data).decode("utf-8"))


def _face_region(skin: Mapping[str, Any]) -> Tuple[Tuple[int, int], Tuple[int, int], bool]:
    """Works out where the face sits on the skin texture.

    Returns ((x, y), (w, h), from_animated_data).
    """
    geometry_name = _b64json(skin["SkinResourcePatch"])["geometry"]["default"]
    geometry_data = _b64json(skin["SkinGeometryData"]) if skin.get("SkinGeometryData") else None

    if geometry_data is None:
        if skin.get("SkinImageHeight") == 128:
            return (16, 16), (16, 16), False
        return (8, 8), (8, 8), False

    if "minecraft:geometry" in geometry_data:
        geometries = geometry_data["minecraft:geometry"]
        if isinstance(geometries, list):
            geometry = next(g for g in geometries if g["description"]["identifier"] == geometry_name)
        else:
            geometry = geometries[geometry_name]
    else:
        geometry = geometry_data[geometry_name]

    head = next(b for b in geometry["bones"] if b["name"] == "head")
    cubes = head.get("cubes") or [{}]
    if "uv" in cubes[0]:
        uv, size = cubes[0]["uv"], cubes[0]["size"]
        return (uv[0] + size[0], uv[1] + size[1]), (size[0], size[1]), False
    return (8, 8), (8, 8), True


def decode_skin_head(skin: Mapping[str, Any]) -> str:
    """Crops the face out of a skin attachment and returns it as a PNG data URL.

    Raises:
        KeyError, ValueError, ...: If the attachment is incomplete or malformed.
    """
    (x, y), (w, h), from_animated = _face_region(skin)
    if from_animated:
        frames = skin.get("AnimatedImageData") or []
        if not frames:
            raise ValueError("no animated image data")
        frame = frames[0]
        image, width, height = frame["Image"], frame["ImageWidth"], frame["ImageHeight"]
    else:
        image, width, height = skin["SkinData"], skin["SkinImageWidth"], skin["SkinImageHeight"]
    pixels = base64.b64decode(image)
    if len(pixels) < width * height * 4:
        raise ValueError(f"skin image is {len(pixels)} bytes, expected {width * height * 4}")
    if x + w > width or y + h > height:
        raise ValueError("face region lies outside the skin image")
    rows = [pixels[((y + r) * width + x) * 4:((y + r) * width + x + w) * 4] for r in range(h)]
    return "data:image/png;base64," + base64.b64encode(_encode_png(rows, w, h)).decode("ascii")


def _encode_png(rows: List[bytes], width: int, height: int) -> bytes:
    def chunk(kind: bytes, body: bytes) -> bytes:
        return struct.pack(">I", len(body)) + kind + body + struct.pack(">I", zlib.crc32(kind + body) & 0xFFFFFFFF)

    header = struct.pack(">IIBBBBB", width, height, 8, 6, 0, 0, 0)
    raw = b"".join(b"\x00" + row for row in rows)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", header) + chunk(b"IDAT", zlib.compress(raw)) + chunk(b"IEND", b"")


# --- Console capture ---

class ConsoleLogHandler(logging.Handler):
    """Mirrors log records into `server.logs.console`.

    Records from panelsync's own loggers are skipped: writing to the tree
    logs at DEBUG level, which would otherwise feed back into the console.
    Records emitted off the loop thread are handed to the loop through the
    service.

    Args:
        service (SyncService): The service owning the tree.
        limit (int): Maximum number of console entries kept.
    """

    def __init__(self, service: Any, limit: int = 500, level: int = logging.INFO):
        super().__init__(level)
        self._service = service
        self._limit = limit

    def emit(self, record: logging.LogRecord) -> None:
        if record.name == "panelsync" or record.name.startswith("panelsync."):
            return
        try:
            line = self.format(record)
            self._service.mutate(record_console, self._service.tree, line, self._limit)
        except Exception:
            self.handleError(record)
