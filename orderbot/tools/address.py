"""
Postal code (CEP) lookup and delivery-area validation.

Resolves a CEP through the BrasilAPI v2 endpoint and checks the address
against the configured delivery city. Lookup failures never break a turn:
they are logged and reported as "not found".
"""

import logging
import re
from typing import Any, Optional, TypedDict

import httpx

from orderbot.conversation.detectors import find_cep
from orderbot.schemas.conversation_schema import AddressComponents, AddressData
from orderbot.utils import has_digit

logger = logging.getLogger(__name__)

_STREET_NUMBER_RE = re.compile(r"(R\.|Rua|Av\.|Avenida|Al\.|Alameda)\s+[^,]+,\s*(\d+)", re.IGNORECASE)
_STREET_NAME_RE = re.compile(r"\b(R\.|Rua|Av\.|Avenida|Al\.|Alameda)\s+([^,]+)", re.IGNORECASE)

NOT_FOUND_MESSAGE = (
    "Não consegui encontrar este endereço. Você poderia informar um CEP válido de {city}?"
)


class AddressValidation(TypedDict, total=False):
    """Result from validate_address."""

    valid: bool
    requires_number: bool
    street_name: str
    formatted_address: str
    components: AddressComponents
    message: str


class AddressService:
    """CEP lookup over HTTP with a bounded timeout."""

    def __init__(
        self,
        base_url: str = "https://brasilapi.com.br/api/cep/v2",
        delivery_city: str = "São Paulo",
        delivery_state: str = "SP",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._city = delivery_city
        self._state = delivery_state
        self._timeout = timeout
        self._client = client

    async def _fetch(self, cep: str) -> Optional[dict[str, Any]]:
        url = f"{self._base_url}/{cep}"
        try:
            if self._client is not None:
                response = await self._client.get(url)
                response.raise_for_status()
                return response.json()
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.warning("CEP %s not resolved (HTTP %s)", cep, e.response.status_code)
        except httpx.RequestError as e:
            logger.error("CEP lookup failed for %s: %s", cep, e)
        except ValueError:
            logger.error("CEP lookup for %s returned invalid JSON", cep)
        return None

    async def lookup_cep(self, cep: str) -> Optional[AddressData]:
        """Resolve a CEP into a formatted address, or None."""
        data = await self._fetch(cep.replace("-", ""))
        if not data:
            return None

        components = AddressComponents(
            street=data.get("street") or "",
            neighborhood=data.get("neighborhood") or "",
            city=data.get("city") or "",
            state=data.get("state") or "",
            cep=data.get("cep") or cep,
        )
        formatted = (
            f"{components.street}, {components.neighborhood}, "
            f"{components.city} - {components.state}, {components.cep}"
        )
        logger.info("CEP %s resolved to %s", cep, formatted)
        return AddressData(formatted_address=formatted, components=components)

    async def resolve_from_text(self, text: str) -> Optional[AddressData]:
        """Find a CEP in free text and resolve it."""
        cep = find_cep(text)
        if cep is None:
            return None
        return await self.lookup_cep(cep)

    def _in_delivery_area(self, components: AddressComponents) -> bool:
        return components.city == self._city and components.state == self._state

    async def validate_address(self, address: str, is_query: bool = False) -> AddressValidation:
        """
        Check an address for delivery.

        Args:
            address: Free-text address, optionally containing a CEP.
            is_query: True when the customer only asks whether we deliver
                there, in which case a house number is not required.

        Returns:
            The validation result with a customer-facing message.
        """
        if not address or not address.strip():
            return {"valid": False, "message": "Por favor, informe um endereço para entrega."}

        cep = find_cep(address)
        if cep:
            resolved = await self.lookup_cep(cep)
            if resolved is None:
                return {"valid": False, "message": NOT_FOUND_MESSAGE.format(city=self._city)}

            components = resolved.components
            if not self._in_delivery_area(components):
                return {
                    "valid": False,
                    "message": (
                        f"Desculpe, só entregamos em {self._city} capital. Este endereço "
                        f"({components.city}-{components.state}) não está na nossa área de entrega."
                    ),
                }

            number_match = _STREET_NUMBER_RE.search(address)
            number = number_match.group(2) if number_match else ""
            parts = [components.street]
            if number:
                parts.append(number)
            if components.neighborhood:
                parts.append(components.neighborhood)
            parts.append(f"{components.city} - {components.state}")
            parts.append(components.cep)
            formatted = ", ".join(p for p in parts if p)

            if number or is_query:
                return {
                    "valid": True,
                    "formatted_address": formatted,
                    "components": components,
                    "message": f"Ótimo! {formatted} faz parte da nossa rota de entregas!",
                }
            return {
                "valid": False,
                "requires_number": True,
                "street_name": components.street,
                "formatted_address": formatted,
                "components": components,
                "message": (
                    f"Preciso do NÚMERO do seu endereço na {components.street} "
                    "para prosseguir com a entrega."
                ),
            }

        if is_query:
            return {"valid": False, "message": NOT_FOUND_MESSAGE.format(city=self._city)}

        if has_digit(address):
            return {
                "valid": True,
                "formatted_address": address.strip(),
                "message": f"Endereço registrado: {address.strip()}",
            }

        street_match = _STREET_NAME_RE.search(address)
        street = street_match.group(0).strip() if street_match else "endereço mencionado"
        return {
            "valid": False,
            "requires_number": True,
            "street_name": street,
            "message": f"Preciso do NÚMERO do seu endereço na {street} para prosseguir com a entrega.",
        }
