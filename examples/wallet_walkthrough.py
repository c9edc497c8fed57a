#!/usr/bin/env python3
"""
Example: a wallet's life from first deposit to financing drop

Runs against in-memory storage: funds an account, invests in the FCI,
accrues a few business days, finances a purchase against the investment,
pays one installment and drops the rest.
"""

import os
import sys
from datetime import date, timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from simply_core.config import SimplyConfig
from simply_core.storage import InMemoryStorage
from simply_core.system import SimplySystem

EXTERNAL_CVU = "0170099220000067797370"


def main():
    print("Simply Core - wallet walkthrough")
    print("=" * 60)
    
    config = SimplyConfig(log_level="WARNING")
    system = SimplySystem(storage=InMemoryStorage(), config=config)
    
    print("\n1. Account")
    account = system.wallet.create_account("demo-user", holder_name="Demo User")
    system.wallet.update_alias("demo-user", "demo.simply.wallet")
    print(f"   CVU:   {account.cvu}")
    print(f"   Alias: demo.simply.wallet")
    
    print("\n2. Incoming transfer")
    system.transfers.receive_external_transfer(account.cvu, "20000.00", source_cvu=EXTERNAL_CVU)
    print(f"   Available: {system.wallet.get_balance('demo-user').available.to_string()}")
    
    print("\n3. FCI investment")
    investment = system.investments.create("demo-user", "10000")
    day = date(2025, 1, 13)
    for _ in range(5):
        system.run_daily_sweeps(day)
        day += timedelta(days=1)
    investment = system.investments.get_investment(investment.id)
    print(f"   Current value:    {investment.current_value}")
    print(f"   Credit available: {investment.credit_available}")
    
    print("\n4. Financing")
    financing = system.financing.create("demo-user", investment.id, "1200", 2)
    first = system.financing.get_installments(financing.id)[0]
    system.financing.pay_installment("demo-user", first.id)
    result = system.financing.drop_financing("demo-user", financing.id)
    print(f"   Penalty charged:  {result['penalty_charged']}")
    print(f"   Returned to user: {result['returned_to_user']}")
    
    print("\n5. Reconciliation")
    report = system.wallet.reconcile("demo-user")
    print(f"   Balance {report.balance} vs ledger {report.ledger_total}: "
          f"{'OK' if report.balanced else 'MISMATCH'}")
    
    system.close()


if __name__ == "__main__":
    main()
