"""Event handlers that fold decoded vault events into the materialized store.

Every handler appends the event's own row (licence sale, repayment, score
update, ...) and moves the vault aggregates only when that row is new. Sums
such as revenue and liquidity are bumped by the row's amount. Loan totals are
re-derived from the vault's loan rows. The score is advanced in place when the
entry is the newest one for the vault; an entry that lands behind newer ones
replays the fold from the stored rows instead. Replays and out-of-order
batches therefore converge on the state of in-order application.

Dependent events for a vault or loan that has not been seen yet insert a
placeholder row (``is_placeholder``); the defining event fills it in later.
"""

from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from .store import MaterializedStore
from .utils import ZERO_ADDRESS, ZERO_BYTES32, log as _log, parse_int


CREATOR_SHARE_PERCENT = 70
VAULT_SHARE_PERCENT = 25
PROTOCOL_FEE_PERCENT = 5

# Score increment as a divisor of the sale price.
SCORE_INCREMENT_DIVISORS = {
    "exclusive": 10,
    "commercial": 20,
    "derivative": 25,
    "standard": 50,
}
DEFAULT_LICENSE_TYPE = "standard"

STATUS_ACTIVE = "Active"
STATUS_REPAID = "Repaid"
STATUS_LIQUIDATED = "Liquidated"


def license_split(price: int) -> Dict[str, int]:
    """70/25/5 revenue split; integer rounding dust goes to the protocol fee."""
    price = int(price)
    creator_share = price * CREATOR_SHARE_PERCENT // 100
    vault_share = price * VAULT_SHARE_PERCENT // 100
    return {
        "creator_share": creator_share,
        "vault_share": vault_share,
        "protocol_fee": price - creator_share - vault_share,
    }


def normalize_license_type(license_type: Any) -> str:
    text = str(license_type or "").strip().lower()
    return text or DEFAULT_LICENSE_TYPE


def score_increment(price: int, license_type: Any) -> int:
    divisor = SCORE_INCREMENT_DIVISORS.get(
        normalize_license_type(license_type), SCORE_INCREMENT_DIVISORS[DEFAULT_LICENSE_TYPE]
    )
    return int(price) // divisor


def fold_score(
    initial_score: int,
    sales: Iterable[Dict[str, Any]],
    updates: Iterable[Dict[str, Any]],
    before: Optional[Tuple[int, int]] = None,
) -> int:
    """Replay licence increments and score overwrites in chain order.

    ``before`` limits the fold to entries strictly earlier than the given
    ``(block_number, log_index)`` position.
    """
    entries = [(s["block_number"], s["log_index"], "add", s["score_increment"]) for s in sales]
    entries.extend((u["block_number"], u["log_index"], "set", u["new_value"]) for u in updates)
    entries.sort(key=lambda e: (e[0], e[1]))
    score = int(initial_score)
    for block_number, log_index, op, value in entries:
        if before is not None and (block_number, log_index) >= before:
            break
        if op == "add":
            score += int(value)
        else:
            score = int(value)
    return score


def loan_status(loan_amount: int, repaid_amount: int, liquidated: bool, placeholder: bool = False) -> str:
    """Repaid once nothing is outstanding, else Liquidated if seen, else Active.

    A placeholder loan has no known principal yet, so its outstanding amount
    is not meaningful and it stays Active until ``LoanIssued`` fills it in.
    """
    if placeholder:
        return STATUS_ACTIVE
    if loan_amount - repaid_amount <= 0:
        return STATUS_REPAID
    if liquidated:
        return STATUS_LIQUIDATED
    return STATUS_ACTIVE


class HandlerSet:
    def __init__(self, store: MaterializedStore):
        self.store = store
        self.counters: Dict[str, int] = defaultdict(int)
        self._handlers: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], None]] = {
            "VaultCreated": self.on_vault_created,
            "LicenseSold": self.on_license_sold,
            "LoanIssued": self.on_loan_issued,
            "LoanRepaid": self.on_loan_repaid,
            "LoanLiquidated": self.on_loan_liquidated,
            "CVSUpdated": self.on_score_updated,
            "Deposited": self.on_deposited,
            "Withdrawn": self.on_withdrawn,
        }

    def apply(self, event: Dict[str, Any]) -> bool:
        """Apply one decoded event. Returns False for logs already applied."""
        name = event["event_name"]
        handler = self._handlers.get(name)
        if handler is None:
            raise ValueError(f"no handler for event {name}")
        if not self.store.mark_processed(
            event["transaction_hash"], event["log_index"], event["block_number"], name
        ):
            self.counters["duplicates"] += 1
            return False
        handler(event["args"], event)
        self.counters["applied"] += 1
        return True

    # -- vault lifecycle -----------------------------------------------------

    def on_vault_created(self, args: Dict[str, Any], ctx: Dict[str, Any]) -> None:
        address = args["vaultAddress"]
        initial_score = parse_int(args["initialCVS"])
        existing = self.store.get_vault(address)
        if existing and not existing["is_placeholder"]:
            _log(f"WARN: VaultCreated for existing vault {address} at block {ctx['block_number']} ignored")
            return
        if existing:
            _log(f"Filling placeholder vault {address} from VaultCreated at block {ctx['block_number']}")
            vault = existing
        else:
            vault = self._blank_vault(address, ctx)
        vault.update(
            {
                "ip_asset_id": args.get("ipId") or ZERO_BYTES32,
                "creator": args.get("creator") or ZERO_ADDRESS,
                "initial_score": initial_score,
                "created_at": _timestamp(ctx),
                "block_number": ctx["block_number"],
                "tx_hash": ctx["transaction_hash"],
                "is_placeholder": False,
            }
        )
        # Everything folded so far started from the placeholder's zero score.
        self._refold_scores(vault)
        self._save_vault(vault, ctx)

    def on_license_sold(self, args: Dict[str, Any], ctx: Dict[str, Any]) -> None:
        address = args["vaultAddress"]
        price = parse_int(args["price"])
        license_type = normalize_license_type(args.get("licenseType"))
        vault = self._ensure_vault(address, ctx, ip_asset_id=args.get("ipId"))
        split = license_split(price)
        increment = score_increment(price, license_type)
        inserted = self.store.insert_license_sale(
            {
                "tx_hash": ctx["transaction_hash"],
                "log_index": ctx["log_index"],
                "vault_address": address,
                "ip_asset_id": args.get("ipId") or vault["ip_asset_id"],
                "licensee": args.get("licensee") or ZERO_ADDRESS,
                "sale_price": price,
                "license_type": license_type,
                "score_increment": increment,
                "block_number": ctx["block_number"],
                "timestamp": _timestamp(ctx),
                **split,
            }
        )
        if inserted:
            vault["total_license_revenue"] += split["vault_share"]
            self._apply_score_entry(vault, _position(ctx), "add", increment)
        self._save_vault(vault, ctx)

    def on_score_updated(self, args: Dict[str, Any], ctx: Dict[str, Any]) -> None:
        address = args["vaultAddress"]
        new_value = parse_int(args["newCVS"])
        vault = self._ensure_vault(address, ctx)
        inserted = self.store.insert_score_update(
            {
                "tx_hash": ctx["transaction_hash"],
                "log_index": ctx["log_index"],
                "vault_address": address,
                "old_value": parse_int(args["oldCVS"]),
                "new_value": new_value,
                "block_number": ctx["block_number"],
                "timestamp": _timestamp(ctx),
            }
        )
        if inserted:
            self._apply_score_entry(vault, _position(ctx), "set", new_value)
        self._save_vault(vault, ctx)

    def on_deposited(self, args: Dict[str, Any], ctx: Dict[str, Any]) -> None:
        self._record_liquidity("deposit", args, args.get("depositor"), ctx)

    def on_withdrawn(self, args: Dict[str, Any], ctx: Dict[str, Any]) -> None:
        self._record_liquidity("withdraw", args, args.get("withdrawer"), ctx)

    def _record_liquidity(self, kind: str, args: Dict[str, Any], account: Optional[str], ctx: Dict[str, Any]) -> None:
        address = args["vaultAddress"]
        amount = parse_int(args["amount"])
        vault = self._ensure_vault(address, ctx)
        inserted = self.store.insert_liquidity_event(
            {
                "tx_hash": ctx["transaction_hash"],
                "log_index": ctx["log_index"],
                "vault_address": address,
                "kind": kind,
                "account": account or ZERO_ADDRESS,
                "amount": amount,
                "shares": parse_int(args.get("shares") or 0),
                "block_number": ctx["block_number"],
                "timestamp": _timestamp(ctx),
            }
        )
        if inserted:
            delta = amount if kind == "deposit" else -amount
            vault["total_liquidity"] += delta
            vault["available_liquidity"] += delta
        self._save_vault(vault, ctx)

    # -- loans ---------------------------------------------------------------

    def on_loan_issued(self, args: Dict[str, Any], ctx: Dict[str, Any]) -> None:
        address = args["vaultAddress"]
        loan_id = parse_int(args["loanId"])
        amount = parse_int(args["amount"])
        duration = parse_int(args.get("duration") or 0)
        vault = self._ensure_vault(address, ctx)
        existing = self.store.get_loan(address, loan_id)
        if existing and not existing["is_placeholder"]:
            _log(f"WARN: LoanIssued for existing loan {address}/{loan_id} at block {ctx['block_number']} ignored")
            return
        if existing:
            _log(f"Filling placeholder loan {address}/{loan_id} from LoanIssued at block {ctx['block_number']}")
        ts = _timestamp(ctx)
        loan = existing or {}
        loan.update(
            {
                "vault_address": address,
                "loan_id": loan_id,
                "borrower": args.get("borrower") or ZERO_ADDRESS,
                "loan_amount": amount,
                "collateral_amount": parse_int(args.get("collateral") or 0),
                "interest_rate": parse_int(args.get("interestRate") or 0),
                "duration": duration,
                "score_at_issuance": self._score_at(vault, _position(ctx)),
                "start_time": ts,
                "end_time": ts + duration,
                "block_number": ctx["block_number"],
                "log_index": ctx["log_index"],
                "tx_hash": ctx["transaction_hash"],
                "is_placeholder": False,
            }
        )
        loan.setdefault("status", STATUS_ACTIVE)
        self.store.upsert_loan(loan)
        self._refresh_loan(address, loan_id)
        self._refresh_loan_totals(vault)
        self._save_vault(vault, ctx)

    def on_loan_repaid(self, args: Dict[str, Any], ctx: Dict[str, Any]) -> None:
        address = args["vaultAddress"]
        loan_id = parse_int(args["loanId"])
        vault = self._ensure_vault(address, ctx)
        self._ensure_loan(address, loan_id, args.get("borrower"), ctx)
        inserted = self.store.insert_repayment(
            {
                "tx_hash": ctx["transaction_hash"],
                "log_index": ctx["log_index"],
                "vault_address": address,
                "loan_id": loan_id,
                "payer": args.get("borrower") or ZERO_ADDRESS,
                "amount": parse_int(args["amount"]),
                "block_number": ctx["block_number"],
                "timestamp": _timestamp(ctx),
            }
        )
        if inserted:
            self._refresh_loan(address, loan_id)
            self._refresh_loan_totals(vault)
        self._save_vault(vault, ctx)

    def on_loan_liquidated(self, args: Dict[str, Any], ctx: Dict[str, Any]) -> None:
        address = args["vaultAddress"]
        loan_id = parse_int(args["loanId"])
        vault = self._ensure_vault(address, ctx)
        loan = self._ensure_loan(address, loan_id, args.get("borrower"), ctx)
        if loan.get("liquidated_at") is None:
            loan["liquidated_at"] = _timestamp(ctx)
            self.store.upsert_loan(loan)
        self._refresh_loan(address, loan_id)
        self._refresh_loan_totals(vault)
        self._save_vault(vault, ctx)

    # -- placeholders --------------------------------------------------------

    def _blank_vault(self, address: str, ctx: Dict[str, Any]) -> Dict[str, Any]:
        ts = _timestamp(ctx)
        return {
            "vault_address": address,
            "ip_asset_id": ZERO_BYTES32,
            "creator": ZERO_ADDRESS,
            "initial_score": 0,
            "current_score": 0,
            "total_liquidity": 0,
            "available_liquidity": 0,
            "total_loans_issued": 0,
            "active_loans_count": 0,
            "total_license_revenue": 0,
            "created_at": ts,
            "updated_at": ts,
            "block_number": ctx["block_number"],
            "tx_hash": ctx["transaction_hash"],
            "is_placeholder": True,
        }

    def _ensure_vault(self, address: str, ctx: Dict[str, Any], ip_asset_id: Optional[str] = None) -> Dict[str, Any]:
        vault = self.store.get_vault(address)
        if vault is not None:
            return vault
        _log(
            f"WARN: {ctx['event_name']} at block {ctx['block_number']} references unknown vault "
            f"{address}; inserting placeholder"
        )
        vault = self._blank_vault(address, ctx)
        if ip_asset_id:
            vault["ip_asset_id"] = ip_asset_id
        self.store.upsert_vault(vault)
        self.counters["placeholders"] += 1
        return vault

    def _ensure_loan(self, address: str, loan_id: int, borrower: Optional[str], ctx: Dict[str, Any]) -> Dict[str, Any]:
        loan = self.store.get_loan(address, loan_id)
        if loan is not None:
            return loan
        _log(
            f"WARN: {ctx['event_name']} at block {ctx['block_number']} references unknown loan "
            f"{address}/{loan_id}; inserting placeholder"
        )
        ts = _timestamp(ctx)
        loan = {
            "vault_address": address,
            "loan_id": loan_id,
            "borrower": borrower or ZERO_ADDRESS,
            "loan_amount": 0,
            "status": STATUS_ACTIVE,
            "start_time": ts,
            "end_time": ts,
            "block_number": ctx["block_number"],
            "log_index": ctx["log_index"],
            "tx_hash": ctx["transaction_hash"],
            "is_placeholder": True,
        }
        self.store.upsert_loan(loan)
        self.counters["placeholders"] += 1
        return self.store.get_loan(address, loan_id)

    # -- derived values ------------------------------------------------------

    def _apply_score_entry(self, vault: Dict[str, Any], position: Tuple[int, int], op: str, value: int) -> None:
        """Fold a freshly inserted sale (``add``) or overwrite (``set``) into the vault score."""
        address = vault["vault_address"]
        if self.store.last_score_position(address) == position:
            if op == "add":
                vault["current_score"] += value
            else:
                vault["current_score"] = value
            for loan in self.store.list_loans_after(address, *position):
                self._set_score_at_issuance(loan, vault["current_score"])
            return
        self.counters["score_replays"] += 1
        sales = self.store.list_license_sales(address)
        updates = self.store.list_score_updates(address)
        vault["current_score"] = fold_score(vault["initial_score"], sales, updates)
        for loan in self.store.list_loans_after(address, *position):
            score = fold_score(vault["initial_score"], sales, updates, before=_position(loan))
            self._set_score_at_issuance(loan, score)

    def _refold_scores(self, vault: Dict[str, Any]) -> None:
        address = vault["vault_address"]
        sales = self.store.list_license_sales(address)
        updates = self.store.list_score_updates(address)
        vault["current_score"] = fold_score(vault["initial_score"], sales, updates)
        for loan in self.store.list_loans(address):
            if not loan["is_placeholder"]:
                score = fold_score(vault["initial_score"], sales, updates, before=_position(loan))
                self._set_score_at_issuance(loan, score)

    def _score_at(self, vault: Dict[str, Any], position: Tuple[int, int]) -> int:
        last = self.store.last_score_position(vault["vault_address"])
        if last is None or last < position:
            return vault["current_score"]
        return fold_score(
            vault["initial_score"],
            self.store.list_license_sales(vault["vault_address"]),
            self.store.list_score_updates(vault["vault_address"]),
            before=position,
        )

    def _set_score_at_issuance(self, loan: Dict[str, Any], score: int) -> None:
        if loan["score_at_issuance"] != score:
            loan["score_at_issuance"] = score
            self.store.upsert_loan(loan)

    def _refresh_loan(self, address: str, loan_id: int) -> None:
        loan = self.store.get_loan(address, loan_id)
        repaid = sum(r["amount"] for r in self.store.list_repayments(address, loan_id))
        loan["repaid_amount"] = repaid
        loan["outstanding_amount"] = loan["loan_amount"] - repaid
        loan["status"] = loan_status(
            loan["loan_amount"], repaid, loan.get("liquidated_at") is not None, loan["is_placeholder"]
        )
        self.store.upsert_loan(loan)

    def _refresh_loan_totals(self, vault: Dict[str, Any]) -> None:
        loans = self.store.list_loans(vault["vault_address"])
        issued = [loan for loan in loans if not loan["is_placeholder"]]
        total_loans_issued = sum(loan["loan_amount"] for loan in issued)
        # Repayments against placeholder loans still returned liquidity.
        all_repaid = sum(loan["repaid_amount"] for loan in loans)
        vault.update(
            {
                "total_loans_issued": total_loans_issued,
                "available_liquidity": vault["total_liquidity"] - total_loans_issued + all_repaid,
                "active_loans_count": sum(1 for loan in issued if loan["status"] == STATUS_ACTIVE),
            }
        )

    def _save_vault(self, vault: Dict[str, Any], ctx: Dict[str, Any]) -> None:
        vault["updated_at"] = max(vault.get("updated_at") or 0, _timestamp(ctx))
        self.store.upsert_vault(vault)


def verify_vault(store: MaterializedStore, address: str) -> Dict[str, Any]:
    """Recompute a vault's score fold from the audit tables and compare."""
    vault = store.get_vault(address)
    if vault is None:
        return {"vault_address": address, "found": False, "consistent": False}
    sales = store.list_license_sales(address)
    expected_score = fold_score(vault["initial_score"], sales, store.list_score_updates(address))
    expected_revenue = sum(s["vault_share"] for s in sales)
    return {
        "vault_address": vault["vault_address"],
        "found": True,
        "stored_score": vault["current_score"],
        "expected_score": expected_score,
        "stored_revenue": vault["total_license_revenue"],
        "expected_revenue": expected_revenue,
        "consistent": expected_score == vault["current_score"]
        and expected_revenue == vault["total_license_revenue"],
    }


def _position(record: Dict[str, Any]) -> Tuple[int, int]:
    return (record["block_number"], record["log_index"])


def _timestamp(ctx: Dict[str, Any]) -> int:
    return int(ctx.get("block_timestamp") or 0)
