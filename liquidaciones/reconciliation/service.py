"""
Settlement service - import and reconciliation pipeline coordinator.

Coordinates one settlement end to end:
1. Parsing (PDF text + transaction CSV)
2. Content-hash de-duplication against what the store already holds
3. Matching (installment grouping, key lookups, organizer resolution)
4. Atomic replacement of the settlement's reconciliations
5. Summary and payouts
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Set

import structlog

from ..config import Settings, get_settings
from ..errors import PayoutNotAllowedError, SettlementNotFoundError
from ..ingestion import parse_csv, parse_pdf_text, read_pdf_text
from ..ingestion.pdf_parser import DroppedLine, extract_liquidation_date, extract_liquidation_number
from ..integrations.order_resolver import OrderResolver, build_order_resolver, close_resolver
from ..models import (
    AuditAction,
    PayoutBatch,
    Reconciliation,
    ReconciliationStatus,
    ReconciliationSummary,
    Settlement,
    SettlementLine,
    SettlementStatus,
    Transaction,
    line_content_key,
    transaction_content_key,
)
from ..utils.audit_logger import AuditLogger
from ..utils.hashing import sha256_bytes, sha256_text
from .matcher import MatchingEngine
from .payouts import apply_payout, build_payout_batches, settlement_status_after_payout
from .summary import build_summary, currency_homogeneous

logger = structlog.get_logger()


class SettlementStore:
    """
    In-memory persistence for settlements and everything derived from them.

    Reconciliation sets are swapped as a whole, so a reader sees either the
    previous run or the new one, never a mix.
    """

    def __init__(self):
        self.settlements: Dict[str, Settlement] = {}
        self.lines: Dict[str, List[SettlementLine]] = {}
        self.transactions: Dict[str, List[Transaction]] = {}
        self.reconciliations: Dict[str, List[Reconciliation]] = {}
        self.audit_logs: Dict[str, AuditLogger] = {}
        self.payouts: List[PayoutBatch] = []
        self._line_hashes: Set[str] = set()
        self._transactions_by_hash: Dict[str, Transaction] = {}

    def get(self, settlement_id: str) -> Settlement:
        settlement = self.settlements.get(settlement_id)
        if settlement is None:
            raise SettlementNotFoundError(settlement_id)
        return settlement

    def find_by_hashes(self, provider: str, hash_pdf: str, hash_csv: str) -> Optional[Settlement]:
        for settlement in self.settlements.values():
            if (settlement.provider, settlement.hash_pdf, settlement.hash_csv) == (provider, hash_pdf, hash_csv):
                return settlement
        return None

    def add_settlement(
        self,
        settlement: Settlement,
        lines: Sequence[SettlementLine],
        transactions: Sequence[Transaction],
    ) -> None:
        self.settlements[settlement.id] = settlement
        self.lines[settlement.id] = list(lines)
        self.transactions[settlement.id] = list(transactions)
        self.reconciliations.setdefault(settlement.id, [])
        self._line_hashes.update(line.content_hash for line in lines)
        for txn in transactions:
            self._transactions_by_hash.setdefault(txn.content_hash, txn)

    def has_line_hash(self, content_hash: str) -> bool:
        return content_hash in self._line_hashes

    def transaction_by_hash(self, content_hash: str) -> Optional[Transaction]:
        return self._transactions_by_hash.get(content_hash)

    def settled_transaction_ids(self, exclude_settlement: Optional[str] = None) -> Set[str]:
        """Transactions already consumed by a reconciled or paid record."""
        consumed = set()
        for settlement_id, records in self.reconciliations.items():
            if settlement_id == exclude_settlement:
                continue
            consumed.update(r.transaction_ref for r in records if r.is_settled and r.transaction_ref)
        return consumed

    def reconciliations_for(self, settlement_id: str) -> List[Reconciliation]:
        self.get(settlement_id)
        return list(self.reconciliations.get(settlement_id, []))

    def replace_reconciliations(self, settlement_id: str, records: Sequence[Reconciliation]) -> None:
        self.get(settlement_id)
        self.reconciliations[settlement_id] = list(records)

    def audit_for(self, settlement_id: str) -> AuditLogger:
        if settlement_id not in self.audit_logs:
            self.audit_logs[settlement_id] = AuditLogger(settlement_id)
        return self.audit_logs[settlement_id]


@dataclass
class ImportResult:
    """Outcome of importing one PDF + CSV pair."""
    settlement: Settlement
    reconciliations: List[Reconciliation]
    summary: ReconciliationSummary
    duplicate: bool = False
    new_lines: int = 0
    new_transactions: int = 0
    dropped_lines: List[DroppedLine] = field(default_factory=list)
    currency_issues: List[str] = field(default_factory=list)


def settlement_status_for(
    reconciliations: Sequence[Reconciliation],
    line_count: int,
    transaction_count: int,
) -> SettlementStatus:
    """``needs_review`` if anything needs review or either side is empty."""
    if line_count == 0 or transaction_count == 0:
        return SettlementStatus.NEEDS_REVIEW
    if any(r.status == ReconciliationStatus.NEEDS_REVIEW for r in reconciliations):
        return SettlementStatus.NEEDS_REVIEW
    return SettlementStatus.READY_TO_PAY


class SettlementService:
    """
    Import, reconcile and pay settlements.

    Holds one order resolver for its lifetime, so organizer lookups are
    memoized across runs when the resolver caches.
    """

    def __init__(
        self,
        store: Optional[SettlementStore] = None,
        order_resolver: Optional[OrderResolver] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or SettlementStore()
        self.order_resolver = order_resolver or build_order_resolver(self.settings)

    async def close(self):
        """Release the order resolver's HTTP client, if any."""
        await close_resolver(self.order_resolver)

    async def import_settlement(
        self,
        pdf_data: bytes,
        csv_data: bytes,
        card_brand: str,
        created_by: str = "unknown",
        pdf_filename: str = "",
        csv_filename: str = "",
        pdf_text: Optional[str] = None,
    ) -> ImportResult:
        """
        Parse, de-duplicate, store and reconcile a settlement PDF + CSV pair.

        Args:
            pdf_data: raw PDF bytes (hashed; text extracted unless ``pdf_text`` given)
            csv_data: raw CSV bytes
            card_brand: card brand of the report, part of every content hash
            created_by: operator recorded on the settlement and in match evidence
            pdf_text: already-extracted PDF text

        Returns:
            ImportResult; ``duplicate`` is set when nothing new was imported
        """
        brand = card_brand.strip().lower()
        hash_pdf = sha256_bytes(pdf_data)
        hash_csv = sha256_bytes(csv_data)

        existing = self.store.find_by_hashes("fiserv", hash_pdf, hash_csv)
        if existing is not None:
            logger.info("Settlement files already imported", settlement_id=existing.id)
            self.store.audit_for(existing.id).record(
                AuditAction.DUPLICATE_IMPORT_SKIPPED,
                "Identical PDF and CSV already imported",
            )
            return self._existing_result(existing)

        text = pdf_text if pdf_text is not None else read_pdf_text(pdf_data)
        pdf_result = parse_pdf_text(text, import_id=hash_pdf)
        csv_result = parse_csv(csv_data, import_id=hash_csv)

        lines = self._unique_lines(pdf_result.lines, brand)
        new_transactions, known_transactions = self._split_transactions(csv_result.transactions, brand)

        if not lines and not new_transactions:
            logger.warning("No new operations to import", brand=brand)
            settlement = Settlement(card_brand=brand, hash_pdf=hash_pdf, hash_csv=hash_csv)
            return ImportResult(
                settlement=settlement,
                reconciliations=[],
                summary=build_summary([], settings=self.settings),
                duplicate=True,
                dropped_lines=pdf_result.dropped,
                currency_issues=csv_result.currency_issues,
            )

        consumed = self.store.settled_transaction_ids()
        transactions = new_transactions + [t for t in known_transactions if t.id not in consumed]

        settlement = Settlement(
            card_brand=brand,
            hash_pdf=hash_pdf,
            hash_csv=hash_csv,
            source_pdf_filename=pdf_filename,
            source_csv_filename=csv_filename,
            liquidation_date=extract_liquidation_date(text, lines),
            liquidation_number=extract_liquidation_number(text),
            declared_total_cents=pdf_result.declared_total_cents,
            currency_homogeneous=currency_homogeneous(transactions),
            created_by=created_by,
        )
        self.store.add_settlement(settlement, lines, transactions)

        audit = self.store.audit_for(settlement.id)
        audit.record(AuditAction.LINES_PARSED, f"Parsed {len(lines)} settlement lines",
                     line_ids=[line.id for line in lines], dropped=len(pdf_result.dropped))
        audit.record(AuditAction.TRANSACTIONS_PARSED, f"Parsed {len(transactions)} transactions",
                     transaction_ids=[t.id for t in transactions],
                     currency_issues=csv_result.currency_issues)

        reconciliations = await self.reconcile_settlement(settlement.id, operator_id=created_by)

        logger.info(
            "Settlement imported",
            settlement_id=settlement.id,
            brand=brand,
            lines=len(lines),
            transactions=len(transactions),
            status=settlement.status.value,
        )
        return ImportResult(
            settlement=settlement,
            reconciliations=reconciliations,
            summary=self.summarize(settlement.id),
            new_lines=len(lines),
            new_transactions=len(new_transactions),
            dropped_lines=pdf_result.dropped,
            currency_issues=csv_result.currency_issues,
        )

    async def reconcile_settlement(self, settlement_id: str, operator_id: str = "system") -> List[Reconciliation]:
        """
        Rebuild a settlement's reconciliations from its stored lines and transactions.
        The previous set is replaced in one step once the new one is complete.
        """
        settlement = self.store.get(settlement_id)
        lines = self.store.lines.get(settlement_id, [])
        transactions = self.store.transactions.get(settlement_id, [])

        engine = MatchingEngine(
            self.order_resolver,
            concurrency=self.settings.resolver_concurrency,
            audit=self.store.audit_for(settlement_id),
        )
        reconciliations = await engine.reconcile(settlement_id, lines, transactions, operator_id)

        self.store.replace_reconciliations(settlement_id, reconciliations)
        settlement.status = settlement_status_for(reconciliations, len(lines), len(transactions))
        return reconciliations

    def summarize(self, settlement_id: str) -> ReconciliationSummary:
        settlement = self.store.get(settlement_id)
        return build_summary(
            self.store.reconciliations_for(settlement_id),
            declared_total_cents=settlement.declared_total_cents,
            currency_ars=settlement.currency_homogeneous,
            settings=self.settings,
        )

    def payout_batches(self, settlement_id: str) -> List[PayoutBatch]:
        """Payable batches for one settlement, one per organizer."""
        return build_payout_batches(
            self.summarize(settlement_id),
            self.store.reconciliations_for(settlement_id),
        )

    def register_payout(
        self,
        batch: PayoutBatch,
        paid_by: str,
        bank_reference: str,
    ) -> PayoutBatch:
        """
        Apply an external payout to every settlement the batch spans.

        Raises:
            PayoutNotAllowedError: a settlement is not ready to pay or a record is not payable.
        """
        for settlement_id in batch.settlement_ids:
            settlement = self.store.get(settlement_id)
            if settlement.status not in (SettlementStatus.READY_TO_PAY, SettlementStatus.PARTIAL):
                raise PayoutNotAllowedError(
                    f"Settlement {settlement_id} is not ready to pay ({settlement.status.value})"
                )

        wanted = set(batch.reconciliation_ids)
        updated: Dict[str, List[Reconciliation]] = {}
        for settlement_id in batch.settlement_ids:
            records = self.store.reconciliations_for(settlement_id)
            sub_batch = replace(
                batch,
                reconciliation_ids=[r.id for r in records if r.id in wanted],
            )
            updated[settlement_id] = apply_payout(records, sub_batch, paid_by, bank_reference)

        found = {r.id for records in updated.values() for r in records if r.id in wanted}
        if found != wanted:
            raise PayoutNotAllowedError("Batch references reconciliations outside its settlements")

        total = 0
        paid_at = None
        for settlement_id, records in updated.items():
            self.store.replace_reconciliations(settlement_id, records)
            new_status = settlement_status_after_payout(records)
            if new_status is not None:
                self.store.get(settlement_id).status = new_status
            for record in records:
                if record.id in wanted:
                    total += record.amount_cents
                    paid_at = record.paid_at
            self.store.audit_for(settlement_id).record(
                AuditAction.PAYOUT_APPLIED,
                f"Payout {bank_reference} applied",
                organizer_id=batch.organizer_id,
            )

        batch.total_cents = total
        batch.bank_reference = bank_reference
        batch.paid_by = paid_by
        batch.paid_at = paid_at
        self.store.payouts.append(batch)
        return batch

    def _unique_lines(self, lines: Sequence[SettlementLine], brand: str) -> List[SettlementLine]:
        unique: Dict[str, SettlementLine] = {}
        for line in lines:
            content_hash = sha256_text(line_content_key(line, brand))
            if content_hash in unique or self.store.has_line_hash(content_hash):
                continue
            unique[content_hash] = replace(line, content_hash=content_hash)
        return list(unique.values())

    def _split_transactions(self, transactions: Sequence[Transaction], brand: str) -> tuple:
        """(new, already stored) transactions, de-duplicated by content hash."""
        new: Dict[str, Transaction] = {}
        known: Dict[str, Transaction] = {}
        for txn in transactions:
            content_hash = sha256_text(transaction_content_key(txn, brand))
            if content_hash in new or content_hash in known:
                continue
            stored = self.store.transaction_by_hash(content_hash)
            if stored is not None:
                known[content_hash] = stored
            else:
                new[content_hash] = replace(txn, content_hash=content_hash)
        return list(new.values()), list(known.values())

    def _existing_result(self, settlement: Settlement) -> ImportResult:
        return ImportResult(
            settlement=settlement,
            reconciliations=self.store.reconciliations_for(settlement.id),
            summary=self.summarize(settlement.id),
            duplicate=True,
        )
