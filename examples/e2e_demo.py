"""
End-to-end demo: budgeted x402 payments against the local mock server.
"""

import threading
import time

import uvicorn

from mock_server import HOST, PORT, app
from tollgate import (
    BudgetLedger,
    PaymentConfig,
    X402Client,
    create_x402_policy,
    generate_session_key,
)
from tollgate.money import format_base_units


def run_server():
    uvicorn.run(app, host=HOST, port=PORT, log_level="error")


def main():
    print("🚀 Tollgate E2E Demo: x402 Payments Against a Mock Server")
    print("=" * 55)
    print()

    print("1️⃣  Starting mock x402 server...")
    server_thread = threading.Thread(target=run_server, daemon=True)
    server_thread.start()
    time.sleep(2)
    print(f"   ✅ Server running on http://{HOST}:{PORT}")
    print()

    print("2️⃣  Issuing a one-hour session key...")
    now = int(time.time())
    key = generate_session_key(3600, now)
    print(f"   ✅ Agent address: {key.address}")
    print()

    print("3️⃣  Setting a budget of 0.002 USDC/day...")
    budget = create_x402_policy(
        max_per_request=1_000,
        daily_budget=2_000,
        total_budget=10_000,
        allowed_domains=[HOST],
    )
    ledger = BudgetLedger(budget, window_start=now)
    print()

    print("4️⃣  Paying three times (the third should be refused)...")
    with X402Client(ledger, key, config=PaymentConfig(network="eip155:84532"), agent_id="demo") as client:
        for i in range(3):
            result = client.pay(f"http://{HOST}:{PORT}/data")
            status = "✅" if result.success else "❌"
            detail = format_base_units(result.amount) if result.success else result.reason
            print(f"   {status} request {i + 1}: {detail}")
    print()

    remaining = ledger.get_remaining_budget(int(time.time()))
    print("5️⃣  Budget summary...")
    print(f"   Spent today: {format_base_units(ledger.state.spent_today)}")
    print(f"   Remaining:   {format_base_units(remaining.daily)} today")
    print()
    print("=" * 55)
    print("🎉 Demo complete! Policy → Budget → Sign → Pay → Track")


if __name__ == "__main__":
    main()
