# backend/services/variants.py
import json
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from models.product import Product, ProductVariant
from services.errors import (
    DuplicateVariant, IncompleteSelection, ProductInactiveOrMissing, ValidationFailed, VariantNotFound,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttributeSet:
    """Canonical, hashable form of a variant's attribute mapping.

    Pairs are sorted by attribute name so that ``{"Size": "M", "Color": "Red"}``
    and ``{"Color": "Red", "Size": "M"}`` are the same set. Names and values are
    stripped of surrounding whitespace; names compare case-insensitively.
    """
    pairs: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def of(cls, mapping: Optional[Mapping[str, object]]) -> "AttributeSet":
        if not mapping:
            return cls()
        cleaned: Dict[str, Tuple[str, str]] = {}
        for raw_name, raw_value in mapping.items():
            name = str(raw_name).strip()
            value = "" if raw_value is None else str(raw_value).strip()
            if not name or not value:
                continue
            folded = name.casefold()
            if folded in cleaned:
                raise ValidationFailed("Attribute given twice", attribute=name)
            cleaned[folded] = (name, value)
        return cls(tuple(cleaned[k] for k in sorted(cleaned)))

    @property
    def names(self) -> frozenset:
        return frozenset(name.casefold() for name, _ in self.pairs)

    def get(self, name: str) -> Optional[str]:
        folded = name.casefold()
        for n, v in self.pairs:
            if n.casefold() == folded:
                return v
        return None

    def matches(self, selection: "AttributeSet") -> bool:
        # Every selected attribute must agree; unselected ones are free
        return all(self.get(name) == value for name, value in selection.pairs)

    @property
    def key(self) -> str:
        return json.dumps([[n.casefold(), v] for n, v in self.pairs], ensure_ascii=False)

    @property
    def label(self) -> str:
        return ", ".join(f"{n}: {v}" for n, v in self.pairs)

    def as_dict(self) -> Dict[str, str]:
        return dict(self.pairs)

    def __bool__(self) -> bool:
        return bool(self.pairs)


@dataclass(frozen=True)
class Resolution:
    product: Product
    variant: Optional[ProductVariant]

    @property
    def variant_id(self) -> Optional[int]:
        return self.variant.id if self.variant else None

    @property
    def label(self) -> Optional[str]:
        if self.variant is None:
            return None
        return AttributeSet.of(self.variant.attributes).label


class VariantResolver:
    """Matches an attribute selection to exactly one sellable variant.

    Pure over the variants it is given: nothing is read or written besides the
    optional product lookup done by :meth:`for_product`.
    """

    def __init__(self, product: Product, variants: Iterable[ProductVariant]):
        self.product = product
        every = [(v, AttributeSet.of(v.attributes)) for v in variants]
        # Inactive variants still declare options: a product whose variants
        # were all retired must not silently fall back to its base stock
        self._declared = [attrs for _, attrs in every]
        self._variants: List[Tuple[ProductVariant, AttributeSet]] = [(v, a) for v, a in every if v.is_active]

    @classmethod
    def for_product(cls, db: Session, product_id: int) -> "VariantResolver":
        product = db.query(Product).filter(Product.id == product_id).first()
        if not product or not product.is_active:
            raise ProductInactiveOrMissing(product_id=product_id)
        variants = db.query(ProductVariant).filter(ProductVariant.product_id == product_id).all()
        return cls(product, variants)

    @property
    def declared_names(self) -> List[str]:
        seen: Dict[str, str] = {}
        for attrs in self._declared:
            for name, _ in attrs.pairs:
                seen.setdefault(name.casefold(), name)
        return [seen[k] for k in sorted(seen)]

    @property
    def requires_selection(self) -> bool:
        return bool(self.declared_names)

    def candidates(self, selection: Optional[Mapping[str, object]] = None) -> List[ProductVariant]:
        """Active variants still compatible with a (possibly partial) selection."""
        chosen = AttributeSet.of(selection)
        return [v for v, attrs in self._variants if attrs.matches(chosen)]

    def available_values(self, name: str, selection: Optional[Mapping[str, object]] = None) -> List[str]:
        # Values of `name` that keep at least one candidate alive, ignoring the
        # current choice for `name` itself
        others = {k: v for k, v in (selection or {}).items() if str(k).strip().casefold() != name.casefold()}
        values = set()
        for variant in self.candidates(others):
            value = AttributeSet.of(variant.attributes).get(name)
            if value is not None:
                values.add(value)
        return sorted(values)

    def resolve(self, selection: Optional[Mapping[str, object]] = None) -> Resolution:
        chosen = AttributeSet.of(selection)

        if not self.requires_selection:
            if chosen:
                raise VariantNotFound(
                    "This product has no options", product_id=self.product.id, selection=chosen.as_dict()
                )
            return Resolution(self.product, None)

        declared = {n.casefold(): n for n in self.declared_names}
        unknown = [n for n, _ in chosen.pairs if n.casefold() not in declared]
        if unknown:
            raise VariantNotFound(product_id=self.product.id, unknown_attributes=unknown)

        missing = [declared[k] for k in sorted(declared) if k not in chosen.names]
        if missing:
            raise IncompleteSelection(product_id=self.product.id, missing=missing)

        matches = self.candidates(chosen.as_dict())
        if not matches:
            raise VariantNotFound(product_id=self.product.id, selection=chosen.as_dict())
        if len(matches) > 1:
            # Unique attribute keys are enforced on write; duplicates mean bad data
            logger.warning(
                "Product %s has %d active variants for %s, using id=%s",
                self.product.id, len(matches), chosen.label, matches[0].id,
            )
        return Resolution(self.product, matches[0])


def ensure_unique_variant(
    db: Session, product_id: int, attributes: Mapping[str, object], exclude_id: Optional[int] = None
) -> AttributeSet:
    """Reject a variant whose attribute set collides with another active variant."""
    attrs = AttributeSet.of(attributes)
    if not attrs:
        raise ValidationFailed("A variant needs at least one attribute")
    q = db.query(ProductVariant).filter(
        ProductVariant.product_id == product_id,
        ProductVariant.attribute_key == attrs.key,
        ProductVariant.is_active.is_(True),
    )
    if exclude_id is not None:
        q = q.filter(ProductVariant.id != exclude_id)
    clash = q.first()
    if clash:
        raise DuplicateVariant(product_id=product_id, variant_id=clash.id, attributes=attrs.as_dict())
    return attrs


def describe_options(resolver: VariantResolver) -> Dict[str, Sequence[str]]:
    return {name: resolver.available_values(name) for name in resolver.declared_names}
