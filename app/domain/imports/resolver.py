"""
Resolution of the entities an imported row points at.

Bookings reference a dealer by code (auto-created on first sight) and
optionally an advisor; enquiries may name an assignee. Everything resolved
here is scoped to the importing dealership.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db.models import Dealer, DealerType, User, UserRole

logger = logging.getLogger(__name__)


class ReferenceResolutionError(Exception):
    """Raised when a row references something that cannot be resolved."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(message)


class CrossTenantReferenceError(ReferenceResolutionError):
    """Raised when a row references an entity owned by another dealership."""


@dataclass(frozen=True)
class ResolvedDealer:
    id: str
    dealer_code: str
    dealership_id: Optional[str]


def infer_dealer_type(dealer_code: str) -> DealerType:
    """
    Guess the manufacturer network from a dealer code.

    Examples:
        >>> infer_dealer_type("TATA-001")
        <DealerType.TATA: 'TATA'>
        >>> infer_dealer_type("2100")
        <DealerType.MARUTI: 'MARUTI'>
    """
    code = (dealer_code or "").strip().upper()
    if "TATA" in code or code.startswith(("3", "5")):
        return DealerType.TATA
    if "MARUTI" in code or code.startswith("2"):
        return DealerType.MARUTI
    if "HYUNDAI" in code or code.startswith("4"):
        return DealerType.HYUNDAI
    if "HONDA" in code:
        return DealerType.HONDA
    if "TOYOTA" in code:
        return DealerType.TOYOTA
    return DealerType.OTHER


class ReferenceResolver:
    """
    Resolves dealers, advisors and assignees for one import run.

    Lookups are cached for the lifetime of the resolver, so a file with a
    thousand rows for the same dealer code queries (or creates) it once.
    """

    def __init__(self, session: Session, dealership_id: Optional[str]):
        self.session = session
        self.dealership_id = dealership_id
        self._dealers: Dict[str, ResolvedDealer] = {}
        self._advisors: Dict[Tuple[str, str], Optional[str]] = {}
        self.created_dealers = 0

    def _find_dealer(self, dealer_code: str) -> Optional[Dealer]:
        return (
            self.session.query(Dealer)
            .filter(Dealer.dealer_code == dealer_code)
            .first()
        )

    def _check_dealer_tenant(self, dealer: Dealer) -> None:
        if dealer.dealership_id is not None and dealer.dealership_id != self.dealership_id:
            raise CrossTenantReferenceError(
                "dealer_code",
                f"Dealer '{dealer.dealer_code}' belongs to another dealership",
            )

    def _create_dealer(
        self,
        dealer_code: str,
        dealer_name: Optional[str],
        zone: Optional[str],
        region: Optional[str],
    ) -> Dealer:
        dealer = Dealer(
            dealer_code=dealer_code,
            dealer_name=dealer_name or f"Dealer {dealer_code}",
            zone=zone,
            region=region,
            dealer_type=infer_dealer_type(dealer_code).value,
            dealership_id=self.dealership_id,
            is_active=True,
        )
        try:
            with self.session.begin_nested():
                self.session.add(dealer)
                self.session.flush()
        except IntegrityError:
            # Another import created the same code first.
            logger.info(f"Dealer '{dealer_code}' was created concurrently; re-reading it")
            existing = self._find_dealer(dealer_code)
            if existing is None:
                raise ReferenceResolutionError(
                    "dealer_code", f"Could not create or load dealer '{dealer_code}'"
                )
            return existing

        self.created_dealers += 1
        logger.info(f"Auto-created dealer '{dealer_code}' ({dealer.dealer_type})")
        return dealer

    def resolve_dealer(
        self,
        dealer_code: str,
        dealer_name: Optional[str] = None,
        zone: Optional[str] = None,
        region: Optional[str] = None,
    ) -> ResolvedDealer:
        """
        Look up a dealer by code, creating it when it does not exist yet.

        Raises:
            ReferenceResolutionError: If no code is given
            CrossTenantReferenceError: If the dealer belongs to another dealership
        """
        code = (dealer_code or "").strip()
        if not code:
            raise ReferenceResolutionError("dealer_code", "Dealer code is required")

        cached = self._dealers.get(code)
        if cached is not None:
            return cached

        dealer = self._find_dealer(code)
        if dealer is None:
            dealer = self._create_dealer(code, dealer_name, zone, region)
        self._check_dealer_tenant(dealer)

        resolved = ResolvedDealer(
            id=dealer.id,
            dealer_code=dealer.dealer_code,
            dealership_id=dealer.dealership_id,
        )
        self._dealers[code] = resolved
        return resolved

    def resolve_advisor(
        self,
        advisor_id: Optional[str] = None,
        employee_login: Optional[str] = None,
        emp_name: Optional[str] = None,
    ) -> Optional[str]:
        """
        Find the advisor a booking belongs to.

        An explicit ``advisor_id`` wins. Otherwise the first customer advisor
        of the importing dealership whose email contains ``employee_login`` or
        whose name contains ``emp_name`` is used.

        Returns:
            The advisor's user id, or None when nothing matches
        """
        if advisor_id:
            user = self.session.get(User, advisor_id)
            if user is not None and user.dealership_id not in (None, self.dealership_id):
                raise CrossTenantReferenceError(
                    "advisor_id", f"Advisor '{advisor_id}' belongs to another dealership"
                )
            return advisor_id

        if not employee_login and not emp_name:
            return None

        cache_key = ((employee_login or "").lower(), (emp_name or "").lower())
        if cache_key in self._advisors:
            return self._advisors[cache_key]

        conditions = []
        if employee_login:
            conditions.append(User.email.ilike(f"%{employee_login}%"))
        if emp_name:
            conditions.append(User.name.ilike(f"%{emp_name}%"))

        matches = [
            user_id
            for (user_id,) in self.session.query(User.id)
            .filter(
                User.role == UserRole.CUSTOMER_ADVISOR.value,
                User.dealership_id == self.dealership_id,
                or_(*conditions),
            )
            .order_by(User.id)
            .all()
        ]

        resolved = matches[0] if matches else None
        if len(matches) > 1:
            logger.warning(
                f"Advisor lookup for login={employee_login!r} name={emp_name!r} matched "
                f"{len(matches)} users; using {resolved}"
            )
        self._advisors[cache_key] = resolved
        return resolved

    def resolve_assignee(self, user_id: str) -> str:
        """
        Check that an enquiry assignee is an active user of this dealership.

        Raises:
            ReferenceResolutionError: If the user is missing or inactive
            CrossTenantReferenceError: If the user belongs to another dealership
        """
        user = self.session.get(User, user_id)
        if user is None or not user.is_active:
            raise ReferenceResolutionError(
                "assigned_to_user_id", f"Assigned user not found or inactive: {user_id}"
            )
        if user.dealership_id != self.dealership_id:
            raise CrossTenantReferenceError(
                "assigned_to_user_id", f"Assigned user '{user_id}' belongs to another dealership"
            )
        return user.id
