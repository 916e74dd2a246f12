"""
Receipt OCR using Gemini

DESIGN DECISION: We use a multimodal Gemini model because:
1. One call turns a photo straight into structured fields
2. It can classify the receipt into the user's OWN category names
3. It can say "this is not a receipt" instead of inventing numbers

This service handles:
1. Building the prompt with the sanitized candidate categories
2. Sending the image inline
3. Parsing the JSON answer into ReceiptData

It does NOT apply the timeout, the retry bound or the sign convention.
Those belong to the scan queue.
"""

import base64
import binascii
import json
from typing import Optional

import google.generativeai as genai
from pydantic import ValidationError

from zerosum.config import get_settings
from zerosum.config.settings import GeminiSettings
from zerosum.models.budget import ReceiptData, ScanErrorCode, ScanResult
from zerosum.services.ocr.base import (
    ReceiptScanner,
    ScanServiceError,
    prepare_candidate_categories,
    sanitize_error_message,
)


def detect_mime_type(image: bytes) -> str:
    """Guess the image type from its magic bytes (PNG when unknown)."""
    if image.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if image.startswith(b"RIFF") and image[8:12] == b"WEBP":
        return "image/webp"
    if image[4:12] in (b"ftypheic", b"ftypheix", b"ftypmif1"):
        return "image/heic"
    return "image/png"


class GeminiReceiptScanner(ReceiptScanner):
    """
    Receipt scanner backed by google-generativeai.

    BOUNDARIES:
    - NEVER persists data
    - NEVER guesses a missing amount
    - Reports non-receipts as SCAN_FAILED_NOT_RECEIPT
    """

    def __init__(self, settings: Optional[GeminiSettings] = None):
        self._settings = settings or get_settings().gemini
        self._configure_genai()

    def _configure_genai(self):
        """Configure Google Generative AI."""
        genai.configure(api_key=self._settings.api_key)
        self._model = genai.GenerativeModel(
            model_name=self._settings.model_name,
            generation_config={
                "temperature": self._settings.temperature,
                "max_output_tokens": self._settings.max_tokens,
            }
        )

    def _build_prompt(self, categories: list[str]) -> str:
        return f"""Extract data from this receipt for a personal budgeting app.

Classify the purchase into exactly one of these categories: {', '.join(categories)}.

Respond with ONLY a JSON object in this exact format:
{{"is_receipt": true, "payee": "merchant name", "date": "YYYY-MM-DD", "amount": 12.34, "category": "category name"}}

Rules:
- "amount" is the final total paid, as a positive number
- Use the current year if the year is missing from the date
- If the image is not a receipt, respond with {{"is_receipt": false}}"""

    @staticmethod
    def _parse_response(text: str) -> ScanResult:
        start = text.find("{")
        end = text.rfind("}") + 1
        if start < 0 or end <= start:
            return ScanResult.fail(ScanErrorCode.UNSCANNABLE, "No structured data in scanner response")
        try:
            data = json.loads(text[start:end])
        except json.JSONDecodeError:
            return ScanResult.fail(ScanErrorCode.UNSCANNABLE, "Scanner response was not valid JSON")

        if data.get("is_receipt") is False:
            return ScanResult.fail(ScanErrorCode.NOT_A_RECEIPT, "Image does not look like a receipt")
        try:
            receipt = ReceiptData.model_validate({
                "payee": data.get("payee") or "",
                "date": data.get("date"),
                "amount": data.get("amount"),
                "category": data.get("category") or None,
            })
        except ValidationError as e:
            return ScanResult.fail(ScanErrorCode.UNSCANNABLE, sanitize_error_message(str(e)))
        if receipt.amount is None:
            return ScanResult.fail(ScanErrorCode.UNSCANNABLE, "No total amount found on receipt")
        return ScanResult.ok(receipt)

    async def scan(self, image_base64: str, categories: list[str]) -> ScanResult:
        """
        Extract receipt fields from a base64-encoded image.

        Raises:
            ScanServiceError: If the Gemini call itself fails
        """
        try:
            image = base64.b64decode(image_base64, validate=True)
        except (binascii.Error, ValueError):
            return ScanResult.fail(ScanErrorCode.UNSCANNABLE, "Image payload is not valid base64")

        candidates = prepare_candidate_categories(categories)
        prompt = self._build_prompt(candidates)
        try:
            response = await self._model.generate_content_async([
                prompt,
                {"mime_type": detect_mime_type(image), "data": image},
            ])
            text = response.text.strip()
        except Exception as e:
            raise ScanServiceError(f"Gemini request failed: {e}") from e
        return self._parse_response(text)
