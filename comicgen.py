# comicgen.py
import os
import io
import re
import sys
import json
import base64
import binascii
import random
import string
from enum import Enum
from pathlib import Path
from typing import List, Optional, Dict, Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, ValidationError, field_validator
from PIL import Image, ImageDraw

# Google AI SDK (script text and panel images)
from google import genai
from google.genai import types

# ------------------ ENV & CONFIG ------------------
load_dotenv()

# Models (override via env if your account uses different names)
# script writing
SCRIPT_MODEL = os.getenv("SCRIPT_MODEL", "gemini-2.5-flash")
# nano banana flash for panel artwork
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image-preview")

# dialogue locale; image prompts are always English
SCRIPT_LANGUAGE = os.getenv("SCRIPT_LANGUAGE", "Traditional Chinese")
# longest edge of a reference image before it is sent upstream
REFERENCE_MAX_SIZE = int(os.getenv("REFERENCE_MAX_SIZE", "1024"))
# cell size of the stitched layout written by the CLI
PANEL_SIZE = int(os.getenv("PANEL_SIZE", "1024"))
PRINT_PROMPTS = os.getenv("PRINT_PROMPTS", "0") == "1"

SAFETY_SETTINGS = [
    types.SafetySetting(category=category,
                        threshold=types.HarmBlockThreshold.BLOCK_NONE)
    for category in (
        types.HarmCategory.HARM_CATEGORY_HARASSMENT,
        types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
        types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
    )
]


def get_api_key() -> str:
    """Read the API credential at call time so a rotated secret is picked up."""
    key = os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")
    if not key:
        raise ConfigurationError(
            "Missing GOOGLE_API_KEY (or GEMINI_API_KEY) in environment")
    return key

# ------------------ PROMPTS -----------------------
PROMPTS_DIR = Path(__file__).parent / "prompts"


def load_prompt(name: str) -> str:
    p = PROMPTS_DIR / f"{name}.txt"
    if not p.exists():
        raise FileNotFoundError(f"Prompt file not found: {p}")
    return p.read_text(encoding="utf-8")


SCRIPT_SYSTEM_TPL = load_prompt("script_system")
SCRIPT_USER_TPL = load_prompt("script_user")
PANEL_REFERENCE_TPL = load_prompt("panel_reference")

# ------------------ ERRORS ------------------------


class ErrorKind(str, Enum):
    METHOD_NOT_ALLOWED = "method_not_allowed"
    INVALID_REQUEST = "invalid_request"
    CONFIGURATION = "configuration"
    UPSTREAM_TEXT_FAILURE = "upstream_text_failure"
    INVALID_SCRIPT = "invalid_script"
    UPSTREAM_IMAGE_FAILURE = "upstream_image_failure"
    INTERNAL = "internal"

    @property
    def status_code(self) -> int:
        return {
            ErrorKind.METHOD_NOT_ALLOWED: 405,
            ErrorKind.INVALID_REQUEST: 400,
        }.get(self, 500)


class ComicError(Exception):
    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def message(self) -> str:
        return str(self)

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    def to_response(self) -> Dict[str, str]:
        return {"error": self.message, "kind": self.kind.value}


class ConfigurationError(ComicError):
    kind = ErrorKind.CONFIGURATION


class InvalidRequestError(ComicError):
    kind = ErrorKind.INVALID_REQUEST


class ScriptGenerationError(ComicError):
    kind = ErrorKind.UPSTREAM_TEXT_FAILURE


class InvalidScriptError(ComicError):
    kind = ErrorKind.INVALID_SCRIPT

    def __init__(self, message: str = "The AI did not produce a valid comic script."):
        super().__init__(message)


class PanelImageError(ComicError):
    kind = ErrorKind.UPSTREAM_IMAGE_FAILURE

    def __init__(self, panel_label: str, message: str):
        super().__init__(message)
        self.panel_label = panel_label

# ------------------ DATA MODELS -------------------


class ComicRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    story_idea: Optional[str] = Field(default=None, alias="storyIdea")
    character: Optional[str] = None
    setting: Optional[str] = None
    style: Optional[str] = None
    # data URI ("data:image/png;base64,...") or a bare base64 payload
    uploaded_image_base64: Optional[str] = Field(
        default=None, alias="uploadedImageBase64")


class ReferenceImage(BaseModel):
    mime_type: str
    data: bytes


class Panel(BaseModel):
    model_config = ConfigDict(extra="allow")

    panel: Any = None
    panel_number: Any = None
    dialogue: Any = None
    image_prompt: str = Field(
        default="", validation_alias=AliasChoices("image_prompt", "imagePrompt"))

    @field_validator("image_prompt", mode="before")
    @classmethod
    def prompt_as_text(cls, v: Any) -> str:
        # passed through as-is; only made printable for the image model
        if v is None:
            return ""
        if isinstance(v, (dict, list)):
            return json.dumps(v, ensure_ascii=False)
        return v if isinstance(v, str) else str(v)

    def label(self, position: int) -> str:
        """Identifier the script gave this panel, else its 1-based position."""
        for value in (self.panel, self.panel_number):
            if value not in (None, ""):
                return str(value)
        return str(position)


class Script(BaseModel):
    panels: List[Panel]

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


class GeneratedImage(BaseModel):
    mime_type: str = "image/png"
    data: bytes

    def to_data_uri(self) -> str:
        b64 = base64.b64encode(self.data).decode("utf-8")
        return f"data:{self.mime_type};base64,{b64}"


class ComicResult(BaseModel):
    script: Script
    images: List[GeneratedImage]

    def to_response(self) -> Dict[str, Any]:
        return {
            "script": self.script.to_dict(),
            "panelImages": [img.to_data_uri() for img in self.images],
        }

# ------------------ UTILITIES ---------------------


def fill(template: str, **kv):
    """Replace only specific placeholders, leaving JSON braces alone."""
    out = template
    for k, v in kv.items():
        out = out.replace(f"{{{k}}}", v)
    return out


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def slugify(text: str, fallback: str = "item") -> str:
    text = text.strip().lower()
    text = re.sub(r"[^a-z0-9]+", "-", text).strip("-")
    return text or fallback


def first_json_block(s: str) -> str:
    # Largest parseable JSON block; tolerates code fences and chatter
    decoder = json.JSONDecoder()
    best_chunk = None
    best_size = 0

    pos = 0
    for m in re.finditer(r"[\{\[]", s):
        i = m.start()
        if i < pos:
            continue  # inside a block already decoded
        try:
            _, end = decoder.raw_decode(s, i)
        except ValueError:
            continue
        if end - i > best_size:
            best_chunk = s[i:end]
            best_size = end - i
        pos = end

    if best_chunk:
        return best_chunk
    raise ValueError("No valid JSON in model output")


def image_bytes_to_pil(b: bytes) -> Image.Image:
    return Image.open(io.BytesIO(b)).convert("RGBA")


def pil_to_png_bytes(img: Image.Image) -> bytes:
    """Converts a PIL Image object to PNG bytes."""
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def resize_to_fill(img: Image.Image, size: int = PANEL_SIZE) -> Image.Image:
    """Resize image to fill the entire square without padding/whitespace."""
    w, h = img.size
    scale = max(size / w, size / h)  # Scale to fill, not fit
    new_w, new_h = int(w * scale), int(h * scale)
    img = img.resize((new_w, new_h), resample=Image.LANCZOS)

    # Crop to exact size if needed
    if new_w > size or new_h > size:
        left = (new_w - size) // 2
        top = (new_h - size) // 2
        img = img.crop((left, top, left + size, top + size))

    return img


def optimize_image_for_api(img: Image.Image, max_size: int = REFERENCE_MAX_SIZE) -> bytes:
    """Shrink and re-encode as JPEG to keep the request body small."""
    img = img.copy()
    img.thumbnail((max_size, max_size), Image.LANCZOS)
    if img.mode in ('RGBA', 'LA', 'P'):
        background = Image.new('RGB', img.size, (255, 255, 255))
        if img.mode == 'P':
            img = img.convert('RGBA')
        background.paste(img, mask=img.split()[-1])
        img = background
    elif img.mode != 'RGB':
        img = img.convert('RGB')
    output = io.BytesIO()
    img.save(output, format='JPEG', quality=85, optimize=True)
    return output.getvalue()


def parse_reference_image(value: Optional[str], max_size: int = REFERENCE_MAX_SIZE) -> Optional[ReferenceImage]:
    """
    Decode the uploaded reference image.
    Accepts "data:<mime>;base64,<payload>" or a bare base64 payload, in which
    case the MIME type is taken from the decoded image itself.
    """
    if not value or not value.strip():
        return None

    value = value.strip()
    mime_type = None
    payload = value
    if value.startswith("data:"):
        header, sep, payload = value.partition(",")
        if not sep:
            raise InvalidRequestError("Reference image data URI has no payload")
        mime_type = header[len("data:"):].split(";")[0] or None

    try:
        data = base64.b64decode("".join(payload.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidRequestError(
            f"Reference image is not valid base64: {e}") from e

    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (OSError, SyntaxError, Image.DecompressionBombError) as e:
        raise InvalidRequestError(
            "Reference image could not be decoded as an image") from e

    if not mime_type:
        mime_type = Image.MIME.get(img.format or "", "image/png")

    if max(img.size) > max_size:
        data = optimize_image_for_api(img, max_size)
        mime_type = "image/jpeg"

    return ReferenceImage(mime_type=mime_type, data=data)


def file_to_data_uri(path: Path) -> str:
    data = path.read_bytes()
    fmt = Image.open(io.BytesIO(data)).format or ""
    mime = Image.MIME.get(fmt, "image/png")
    return f"data:{mime};base64,{base64.b64encode(data).decode('utf-8')}"


def create_comic_layout(panels: List[bytes], panel_size: int = PANEL_SIZE) -> Image.Image:
    """Stitch panels together into a two-column comic page."""
    if not panels:
        raise ValueError("No panels to stitch together")

    cols = 2
    rows = (len(panels) + 1) // 2  # Ceiling division

    # Comic styling
    border_width = 8
    panel_spacing = 12
    margin = 20

    canvas_width = cols * panel_size + (cols - 1) * panel_spacing + 2 * margin
    canvas_height = rows * panel_size + (rows - 1) * panel_spacing + 2 * margin

    canvas = Image.new("RGB", (canvas_width, canvas_height), "white")
    draw = ImageDraw.Draw(canvas)

    for i, panel_bytes in enumerate(panels):
        row = i // cols
        col = i % cols

        x = margin + col * (panel_size + panel_spacing)
        y = margin + row * (panel_size + panel_spacing)

        panel_img = resize_to_fill(image_bytes_to_pil(panel_bytes), panel_size)

        draw.rectangle([x - border_width//2, y - border_width//2,
                       x + panel_size + border_width//2, y + panel_size + border_width//2],
                       fill="black")
        canvas.paste(panel_img, (x, y), panel_img)

    return canvas

# --- Simple prompt logger (stdout + optional file) ---


class PromptLogger:
    def __init__(self, out_file: Optional[Path] = None):
        self.out_file = out_file
        self.lines: List[str] = []

    def log(self, title: str, content: str):
        block = f"\n===== {title} =====\n{content.strip()}\n"
        self.lines.append(block)
        if PRINT_PROMPTS:
            print(block)

    def flush(self):
        if self.out_file is not None:
            self.out_file.write_text("".join(self.lines), encoding="utf-8")

# ------------------ GENAI WRAPPER ----------------


def first_inline_image(resp) -> Optional[GeneratedImage]:
    candidates = getattr(resp, "candidates", None) or []
    if not candidates:
        return None
    content = getattr(candidates[0], "content", None)
    for p in getattr(content, "parts", None) or []:
        inline = getattr(p, "inline_data", None)
        if inline is not None and inline.data:
            return GeneratedImage(mime_type=inline.mime_type or "image/png", data=inline.data)
    return None


class GAIC:
    def __init__(self, api_key: Optional[str] = None, client=None):
        self.client = client if client is not None else genai.Client(
            api_key=api_key)

    # Script writing: JSON mode, no safety blocking
    def generate_json(self, system_prompt: str, user_prompt: str, model: str = SCRIPT_MODEL) -> Any:
        try:
            resp = self.client.models.generate_content(
                model=model,
                contents=user_prompt,
                config=types.GenerateContentConfig(
                    system_instruction=system_prompt,
                    response_mime_type="application/json",
                    safety_settings=SAFETY_SETTINGS,
                ),
            )
        except Exception as e:
            raise ScriptGenerationError(f"Script generation failed: {e}") from e

        text = getattr(resp, "text", None) or ""
        if not text.strip():
            raise ScriptGenerationError("Script model returned an empty response")
        try:
            return json.loads(text)
        except ValueError:
            pass
        try:
            return json.loads(first_json_block(text))
        except ValueError as e:
            raise ScriptGenerationError(
                f"Script model returned invalid JSON: {e}") from e

    def generate_image(self, prompt: str, reference: Optional[ReferenceImage] = None,
                       model: str = IMAGE_MODEL) -> Optional[GeneratedImage]:
        """
        Render one panel. With a reference image the image part goes first,
        followed by the instruction text. Returns None when the response
        carries no inline image.
        """
        contents = [types.Part.from_text(text=prompt)]
        if reference is not None:
            contents.insert(0, types.Part.from_bytes(
                data=reference.data, mime_type=reference.mime_type))

        resp = self.client.models.generate_content(
            model=model,
            contents=contents,
            config=types.GenerateContentConfig(
                response_modalities=["TEXT", "IMAGE"],
                safety_settings=SAFETY_SETTINGS,
            ),
        )
        return first_inline_image(resp)

# ------------------ SCRIPT SHAPES ----------------


def _list_under(key: str):
    def match(raw: Dict[str, Any]) -> Optional[List[Any]]:
        value = raw.get(key)
        return value if isinstance(value, list) else None
    match.__name__ = f"match_{key}"
    return match


PANEL_KEY_RE = re.compile(r"^panel[\s_-]*\d+$", re.IGNORECASE)


def match_keyed_panels(raw: Dict[str, Any]) -> Optional[List[Any]]:
    # {"panel1": {...}, "panel2": {...}} -> values in source order
    keyed = [v for k, v in raw.items() if PANEL_KEY_RE.match(str(k))]
    if keyed and all(isinstance(v, dict) for v in keyed):
        return keyed
    return None


# Tried in order; the first matcher returning a list wins
SCRIPT_SHAPES = (
    _list_under("panels"),
    _list_under("comic_panels"),
    _list_under("comic_script"),
    match_keyed_panels,
)


def normalize_script(raw: Any) -> Script:
    if not isinstance(raw, dict):
        raise InvalidScriptError()

    panels = None
    for match in SCRIPT_SHAPES:
        panels = match(raw)
        if panels is not None:
            break

    if not panels:
        raise InvalidScriptError()

    try:
        return Script(panels=panels)
    except ValidationError as e:
        raise InvalidScriptError(
            f"The AI did not produce a valid comic script: {e.error_count()} malformed panel field(s).") from e

# ------------------ PIPELINE STEPS ---------------


def build_script_prompts(req: ComicRequest) -> tuple:
    system_prompt = fill(SCRIPT_SYSTEM_TPL, language=SCRIPT_LANGUAGE)
    user_prompt = fill(
        SCRIPT_USER_TPL,
        story_idea=req.story_idea or "",
        character=req.character or "",
        setting=req.setting or "",
        style=req.style or "",
    )
    return system_prompt, user_prompt


def build_panel_instruction(p: Panel, reference: Optional[ReferenceImage]) -> str:
    if reference is None:
        return p.image_prompt
    return fill(PANEL_REFERENCE_TPL, prompt=p.image_prompt)


def write_script(g: GAIC, req: ComicRequest, log: PromptLogger) -> Script:
    system_prompt, user_prompt = build_script_prompts(req)
    log.log("SCRIPT_SYSTEM_PROMPT", system_prompt)
    log.log("SCRIPT_USER_PROMPT", user_prompt)
    raw = g.generate_json(system_prompt, user_prompt)
    log.log("SCRIPT_RESPONSE", json.dumps(raw, ensure_ascii=False, indent=2))
    return normalize_script(raw)


def render_panels(g: GAIC, script: Script, reference: Optional[ReferenceImage],
                  log: PromptLogger) -> List[GeneratedImage]:
    images: List[GeneratedImage] = []
    for position, p in enumerate(script.panels, start=1):
        label = p.label(position)
        instruction = build_panel_instruction(p, reference)
        log.log(f"PANEL_IMAGE_PROMPT [#{label}]", instruction)

        try:
            image = g.generate_image(instruction, reference)
        except Exception as e:
            raise PanelImageError(
                label, f"Panel {label} image generation failed: {e}") from e
        if image is None:
            raise PanelImageError(
                label, f"Panel {label} image generation failed: the AI returned no image data.")

        images.append(image)
        print(f"   ✓ Panel {label} ({position}/{len(script.panels)})")
    return images

# ------------------ MAIN ORCHESTRATION -----------


def generate_comic(g: GAIC, req: ComicRequest, logger: Optional[PromptLogger] = None) -> ComicResult:
    """
    Write a script for the request and render one image per panel.

    Panels are rendered one at a time in script order; the first panel that
    fails aborts the whole comic.
    """
    logger = logger or PromptLogger()
    reference = parse_reference_image(req.uploaded_image_base64)

    print(">> Writing script...")
    script = write_script(g, req, logger)
    print(f"   Panels: {len(script.panels)}")

    if reference is not None:
        print(">> Rendering panels (reference image attached)...")
    else:
        print(">> Rendering panels...")
    images = render_panels(g, script, reference, logger)

    return ComicResult(script=script, images=images)


DEMO_REQUEST = {
    "storyIdea": "Two friends on a rooftop at dusk receive a message from a mechanical hawk.",
    "character": "A short-haired girl in a yellow raincoat carrying a battered radio",
    "setting": "A quiet city rooftop at dusk, water towers and antennas",
    "style": "Japanese manga style, black and white screentone",
}


def write_outputs(result: ComicResult, out_root: Path) -> None:
    ensure_dir(out_root)
    (out_root / "script.json").write_text(
        json.dumps(result.script.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")

    panel_bytes = []
    for i, image in enumerate(result.images, start=1):
        png = pil_to_png_bytes(image_bytes_to_pil(image.data))
        fname = f"panel-{i:03d}.png"
        (out_root / fname).write_bytes(png)
        panel_bytes.append(png)
        print(f"   ✓ Saved {fname}")

    comic_layout = create_comic_layout(panel_bytes, PANEL_SIZE)
    comic_layout.save(out_root / "comic_final.png", "PNG")


def main(argv: Optional[List[str]] = None) -> None:
    argv = sys.argv[1:] if argv is None else argv
    if argv and Path(argv[0]).exists():
        payload = json.loads(Path(argv[0]).read_text(encoding="utf-8"))
        slug = slugify(Path(argv[0]).stem)
    else:
        print("No request file given; using DEMO_REQUEST.")
        payload = dict(DEMO_REQUEST)
        slug = "demo-comic"

    if len(argv) > 1:
        payload["uploadedImageBase64"] = file_to_data_uri(Path(argv[1]))

    req = ComicRequest.model_validate(payload)
    run_id = "".join(random.choices(
        string.ascii_lowercase + string.digits, k=6))
    out_dir = Path("output") / f"{slug}-{run_id}"
    ensure_dir(out_dir)

    logger = PromptLogger(out_dir / "prompts_used.txt")
    g = GAIC(get_api_key())
    try:
        result = generate_comic(g, req, logger)
    finally:
        logger.flush()

    write_outputs(result, out_dir)
    print(f">> Done. Output at: {out_dir}")
    print(f">> Final comic: {out_dir / 'comic_final.png'}")


# ------------------ CLI -------------------------
if __name__ == "__main__":
    main()
