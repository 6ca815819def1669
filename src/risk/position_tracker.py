from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, List, Optional
import os

import numpy as np
import pandas as pd

from core.events import TradeAction, EnterAction, ExitTierAction, EmergencyExitAction
from utils.config import LAMPORTS_PER_SOL

COLUMNS = [
    'token', 'time', 'action', 'venue', 'token_amount', 'sol_amount',
    'tier_index', 'correlation_id', 'status', 'bundle_id',
]


@dataclass
class TradeRecord:
    token: str
    time: datetime
    action: str             # 'buy', 'take_profit' or 'copy_exit'
    venue: str
    token_amount: int       # Raw token amount
    sol_amount: int         # In lamports; estimated from the triggering swap for exits
    correlation_id: str
    tier_index: Optional[int] = None
    status: str = 'pending'
    bundle_id: Optional[str] = None


class PositionTracker:
    """In-memory trade history of every committed action, exportable with pandas.

    Nothing here is read back at startup.
    """

    def __init__(self, csv_path: Optional[str] = None):
        self.csv_path = csv_path
        self.trades: List[TradeRecord] = []

    def record_action(self, action: TradeAction, timestamp: Optional[datetime] = None) -> TradeRecord:
        timestamp = timestamp or datetime.now()
        if isinstance(action, EnterAction):
            kind, tokens, sol, tier = 'buy', action.expected_token_amount, action.sol_amount, None
        elif isinstance(action, ExitTierAction):
            kind, tokens, tier = 'take_profit', action.token_amount, action.tier_index
            sol = int(action.token_amount * action.reference_price)
        elif isinstance(action, EmergencyExitAction):
            kind, tokens, tier = 'copy_exit', action.token_amount, None
            sol = int(action.token_amount * action.reference_price)
        else:
            raise TypeError(f"Unknown action type: {type(action).__name__}")

        record = TradeRecord(
            token=action.token,
            time=timestamp,
            action=kind,
            venue=action.venue.value,
            token_amount=tokens,
            sol_amount=sol,
            correlation_id=action.correlation_id,
            tier_index=tier,
        )
        self.trades.append(record)
        return record

    def record_submission(self, correlation_id: str, token: str, accepted: bool, bundle_id: Optional[str] = None):
        """Mark the pending records of a submitted bundle"""
        for record in self.trades:
            if record.correlation_id == correlation_id and record.token == token and record.status == 'pending':
                record.status = 'submitted' if accepted else 'failed'
                record.bundle_id = bundle_id

    def to_dataframe(self) -> pd.DataFrame:
        if not self.trades:
            return pd.DataFrame(columns=COLUMNS)
        return pd.DataFrame([asdict(t) for t in self.trades], columns=COLUMNS)

    def export_csv(self, path: Optional[str] = None) -> str:
        path = path or self.csv_path
        if not path:
            raise ValueError("No CSV path given")
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.to_dataframe().to_csv(path, index=False)
        return path

    def stats(self) -> Dict:
        """Counts and estimated PnL over tokens that have seen at least one exit"""
        df = self.to_dataframe()
        if df.empty:
            return {
                'entries': 0, 'take_profits': 0, 'copy_exits': 0,
                'sol_spent': 0.0, 'sol_received': 0.0, 'estimated_pnl': 0.0, 'win_rate': 0.0,
            }

        buys = df[df['action'] == 'buy']
        exits = df[df['action'] != 'buy']
        spent = buys.groupby('token')['sol_amount'].sum()
        received = exits.groupby('token')['sol_amount'].sum()

        exited_tokens = received.index
        per_token = received - spent.reindex(exited_tokens, fill_value=0)
        win_rate = float(np.mean(per_token.to_numpy() > 0)) * 100 if len(per_token) else 0.0

        return {
            'entries': int(len(buys)),
            'take_profits': int((df['action'] == 'take_profit').sum()),
            'copy_exits': int((df['action'] == 'copy_exit').sum()),
            'sol_spent': float(spent.sum()) / LAMPORTS_PER_SOL,
            'sol_received': float(received.sum()) / LAMPORTS_PER_SOL,
            'estimated_pnl': float(per_token.sum()) / LAMPORTS_PER_SOL,
            'win_rate': win_rate,
        }
