"""Structured recipe extraction from fetched web pages.

Two stages:
- sanitize_html: strip a page down to the text and images an LLM needs
- extract_recipe_data: ask the model for a typed recipe and tidy the result
"""

import json
import logging
from typing import List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Comment
from pydantic import BaseModel, Field

from ..core.ai_client import ai_client
from ..core.text import clean_md, clamp, normalize_ingredient_name, normalize_text
from ..exceptions import ImportPipelineError
from ..settings import settings

logger = logging.getLogger("recipebox.imports")

NOISE_TAGS = ["script", "style", "svg", "noscript", "iframe", "template", "nav", "footer", "form"]


class ExtractedIngredient(BaseModel):
    raw_text: str = Field(description="The full ingredient line as found on the page.")
    normalized_name: str = Field(description="Simple ingredient name, lowercase, no quantities.")


class ExtractedStep(BaseModel):
    step_text: str


class ExtractedRecipe(BaseModel):
    title: str
    cook_time_minutes: Optional[int] = None
    prep_time_minutes: Optional[int] = None
    ingredients: List[ExtractedIngredient] = []
    steps: List[ExtractedStep] = []
    images: List[str] = []


SYSTEM_PROMPT = """You are a culinary data extraction expert. Your goal is to transform messy HTML or text from cooking websites into structured recipe data.

Rules:
1. **Title**: The main name of the dish.
2. **Times**: Extract 'cook_time_minutes' and 'prep_time_minutes' as integers. If not found, use null.
3. **Ingredients**:
   - 'raw_text': The full line as found on the page (e.g., '2 tbsp extra virgin olive oil').
   - 'normalized_name': The simple name of the ingredient, lowercase, without quantities (e.g., 'olive oil').
4. **Steps**: Extract each instruction step separately. Do not hallucinate steps.
5. **Images**: Extract the URLs of the images in the recipe. Don't pick random images from the page. Pick maximum 3 images. Only pick images that are relevant to the recipe. Prefer images of the final dish. Only .jpg, .png images.
6. **Cleanliness**: Remove any non-recipe content like ads, related posts, or site navigation.

Return JSON ONLY."""


def _structured_data_blocks(soup: BeautifulSoup) -> list[str]:
    """JSON-LD blocks that describe a Recipe (schema.org)."""
    blocks = []
    for tag in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = tag.string or tag.get_text() or ""
        if "Recipe" not in raw:
            continue
        try:
            blocks.append(json.dumps(json.loads(raw), ensure_ascii=False, separators=(",", ":")))
        except json.JSONDecodeError:
            continue
    return blocks


def _image_src(tag, base_url: Optional[str]) -> Optional[str]:
    src = tag.get("src") or tag.get("data-src") or tag.get("data-lazy-src")
    if not src or src.startswith("data:"):
        return None
    return urljoin(base_url, src) if base_url else src


def sanitize_html(html: str, base_url: Optional[str] = None, max_chars: Optional[int] = None) -> str:
    """
    Reduce a page to recipe-relevant text.

    Keeps visible text, image references ("[image: url | alt]"), the og:image
    and any schema.org Recipe JSON-LD. Drops scripts, styles, svg, comments
    and page chrome. Output is truncated to max_chars.
    """
    max_chars = max_chars or settings.import_max_content_chars
    soup = BeautifulSoup(html or "", "html.parser")

    structured = _structured_data_blocks(soup)

    og_image = None
    og = soup.find("meta", attrs={"property": "og:image"})
    if og and og.get("content"):
        og_image = urljoin(base_url, og["content"]) if base_url else og["content"]

    for name in NOISE_TAGS:
        for tag in soup.find_all(name):
            tag.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    for img in soup.find_all("img"):
        src = _image_src(img, base_url)
        if src:
            alt = normalize_text(img.get("alt") or "")
            img.replace_with(f"\n[image: {src}{' | ' + alt if alt else ''}]\n")
        else:
            img.decompose()

    root = soup.body or soup
    lines = [normalize_text(line) for line in root.get_text("\n").splitlines()]
    text = "\n".join(line for line in lines if line)

    sections = []
    title = soup.title.get_text(strip=True) if soup.title else ""
    if title:
        sections.append(f"Page title: {title}")
    if og_image:
        sections.append(f"[image: {og_image} | og:image]")
    for block in structured:
        sections.append(f"Structured data: {block}")
    sections.append(text)

    content = "\n\n".join(sections)
    if len(content) > max_chars:
        content = content[:max_chars]
    return content


def _tidy(extracted: ExtractedRecipe) -> ExtractedRecipe:
    """Strip markdown artifacts, re-normalize names and drop empty rows."""
    ingredients = []
    for ing in extracted.ingredients:
        raw = normalize_text(clean_md(ing.raw_text))
        name = normalize_ingredient_name(clean_md(ing.normalized_name) or raw)
        if raw and name:
            ingredients.append(ExtractedIngredient(raw_text=raw, normalized_name=clamp(name, 200)))

    steps = []
    for step in extracted.steps:
        text = normalize_text(clean_md(step.step_text))
        if text:
            steps.append(ExtractedStep(step_text=text))

    def _minutes(value: Optional[int]) -> Optional[int]:
        return value if value is not None and value >= 0 else None

    return ExtractedRecipe(
        title=clamp(normalize_text(clean_md(extracted.title)), 200),
        cook_time_minutes=_minutes(extracted.cook_time_minutes),
        prep_time_minutes=_minutes(extracted.prep_time_minutes),
        ingredients=ingredients,
        steps=steps,
        images=[url.strip() for url in extracted.images if url and url.strip()],
    )


async def extract_recipe_data(content: str) -> ExtractedRecipe:
    """Extract structured recipe data from sanitized page content.

    Raises:
        ImportPipelineError("extraction_failed") when the model is unavailable or errors
        ImportPipelineError("invalid_extraction") when the result is not a usable recipe
    """
    result = await ai_client.generate_structured(
        prompt=f"Extract the recipe from the following content:\n\n{content}",
        response_model=ExtractedRecipe,
        system_instruction=SYSTEM_PROMPT,
    )

    if result is None:
        reason = ai_client.last_error or "AI extraction is not available."
        logger.error(f"Recipe extraction failed: {reason}")
        raise ImportPipelineError("extraction_failed", "The AI could not extract a recipe. Please try again.")

    recipe = _tidy(result)

    if not recipe.title:
        raise ImportPipelineError("invalid_extraction", "No recipe title found on the page.")
    if not recipe.ingredients:
        raise ImportPipelineError("invalid_extraction", "No ingredients found on the page.")
    if not recipe.steps:
        raise ImportPipelineError("invalid_extraction", "No steps found on the page.")

    return recipe
