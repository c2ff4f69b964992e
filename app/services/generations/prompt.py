"""
Промпт для визуализации натяжного потолка по конфигурации генерации.

config keys (all optional): color, texture, profiles{top,right,bottom,left},
spots{enabled,count,layout}, chandelier{enabled,style}, lightLines{enabled,count,direction}, cornice{enabled}.
"""
from typing import Any

COLORS_EN = {
    "white": "white",
    "ivory": "ivory",
    "beige": "beige",
    "gray": "light gray",
    "black": "black",
    "blue": "light blue",
}

TEXTURES = {
    "glossy": "glossy mirror-like reflective lacquered surface that reflects the room below",
    "satin": "satin pearl-like finish with subtle soft sheen",
    "matte": "matte flat finish like painted drywall",
}

WALLS = {"top": "far/back", "right": "right", "bottom": "near/front", "left": "left"}

GRID_LAYOUTS = {4: "in 2x2 grid pattern", 6: "in 2x3 grid pattern", 8: "in 2x4 grid pattern",
                10: "in 2x5 grid pattern", 12: "in 3x4 grid pattern"}

CHANDELIERS = {
    "modern": "modern minimalist pendant lamp with white shade",
    "classic": "elegant classic chandelier with multiple arms and shades",
    "crystal": "luxurious crystal chandelier with hanging crystals",
}

LINE_DIRECTIONS = {
    "along": "running lengthwise along the room",
    "across": "running across the width of the room",
    "diagonal": "running diagonally",
}

RULES = """IMPORTANT RULES:
- Keep the ceiling FLAT - no multiple levels, no 3D structures
- Do NOT add air conditioning or ventilation
- Keep all walls, floor, furniture, doors, windows exactly as they are
- Only modify the ceiling area"""


def _section(config: dict[str, Any], key: str) -> dict[str, Any]:
    value = config.get(key)
    return value if isinstance(value, dict) else {}


def build_prompt(config: dict[str, Any] | None) -> str:
    config = config or {}
    color = COLORS_EN.get(config.get("color") or "", "white")
    texture = TEXTURES.get(config.get("texture") or "", TEXTURES["matte"])

    lines = [
        "Edit only the ceiling in this room photo. Replace the existing ceiling with a modern stretch ceiling.",
        "",
        "The NEW ceiling must be:",
        f"- Solid {color} color with {texture}",
        "- Perfectly flat and smooth from wall to wall",
        "- Professional stretch ceiling installation look",
        "",
    ]

    elements = []
    profiles = _section(config, "profiles")
    for wall, wall_name in WALLS.items():
        profile = profiles.get(wall)
        if profile == "shadow":
            elements.append(f"Add a thin black shadow gap (1cm) where ceiling meets the {wall_name} wall")
        elif profile == "floating":
            elements.append(
                f"Add white LED strip lighting at the junction of ceiling and {wall_name} wall creating a floating effect"
            )

    spots = _section(config, "spots")
    if spots.get("enabled"):
        count = int(spots.get("count") or 6)
        layout = spots.get("layout")
        if layout == "perimeter":
            where = "around the perimeter of the ceiling"
        elif layout == "center":
            where = "clustered in the center area"
        else:
            where = GRID_LAYOUTS.get(count, "evenly distributed")
        elements.append(
            f"Add {count} small round LED spotlights (5-7cm diameter) recessed into the ceiling, {where}. "
            "All lights are ON and glowing"
        )

    chandelier = _section(config, "chandelier")
    if chandelier.get("enabled"):
        style = CHANDELIERS.get(chandelier.get("style") or "", CHANDELIERS["modern"])
        elements.append(f"Add a {style} hanging from the center of the ceiling. The light is ON")

    light_lines = _section(config, "lightLines")
    if light_lines.get("enabled"):
        direction = LINE_DIRECTIONS.get(light_lines.get("direction") or "", LINE_DIRECTIONS["along"])
        count = int(light_lines.get("count") or 1)
        elements.append(f"Add {count} bright white LED light line(s) built into the ceiling, {direction}")

    if _section(config, "cornice").get("enabled"):
        elements.append(
            "Add a recessed niche near the window for hidden curtain rod - "
            "a dark rectangular gap in the ceiling parallel to the window wall"
        )

    if elements:
        lines.append("Add these lighting elements:")
        lines.extend(f"{i}. {el}" for i, el in enumerate(elements, 1))
        lines.append("")

    lines.append(RULES)
    return "\n".join(lines)
