"""
Fire concurrent orders at a running service and check for oversells.

    groupbuy-trial --product P1 --shop S1 --orders 50 --qty 2
"""
import argparse
import json
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

import requests


def place_order(url: str, payload: dict, trial_id: int, timeout: float = 10) -> dict:
    start = time.time()
    try:
        resp = requests.post(f"{url}/api/orders", json=payload, timeout=timeout)
        body = resp.json()
    except (requests.RequestException, ValueError) as e:
        return {"trial": trial_id, "status": "error", "reason": "NETWORK_ERROR",
                "message": str(e), "elapsed": round(time.time() - start, 3)}
    body["trial"] = trial_id
    body["elapsed"] = round(time.time() - start, 3)
    return body


def summarize(results: list, qty: int, initial_stock: int, final_stock: int) -> dict:
    succeeded = [r for r in results if r.get("status") == "success"]
    out_of_stock = [r for r in results if r.get("reason") == "INSUFFICIENT_STOCK"]
    errors = len(results) - len(succeeded) - len(out_of_stock)
    granted = len(succeeded) * qty
    return {
        "orders_attempted": len(results),
        "succeeded": len(succeeded),
        "out_of_stock": len(out_of_stock),
        "errors": errors,
        "initial_stock": initial_stock,
        "final_stock": final_stock,
        "granted": granted,
        "oversold": granted > initial_stock or final_stock < 0,
        "stock_consistent": initial_stock - granted == final_stock,
    }


def fetch_stock(url: str, product_id: str, variant: str = None) -> int:
    resp = requests.get(f"{url}/api/products/{product_id}", timeout=10)
    resp.raise_for_status()
    product = resp.json()
    if variant is None:
        return product["total_stock"]
    for v in product["variants"]:
        if v["name"] == variant:
            return v["stock"]
    raise KeyError(f"Variant {variant} not found on {product_id}")


def run_trial(args) -> dict:
    initial_stock = fetch_stock(args.url, args.product, args.variant)
    item = {"productId": args.product, "qty": args.qty}
    if args.variant:
        item["variant"] = args.variant
    payload = {"shopId": args.shop, "items": [item],
               "customer": {"name": "trial", "phone": "0000000000"}}

    results = []
    with ThreadPoolExecutor(max_workers=args.workers) as executor:
        futures = [executor.submit(place_order, args.url, payload, i) for i in range(1, args.orders + 1)]
        for f in as_completed(futures):
            results.append(f.result())

    final_stock = fetch_stock(args.url, args.product, args.variant)
    return {"summary": summarize(results, args.qty, initial_stock, final_stock), "results": results}


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="groupbuy-trial", description="Concurrent order trial")
    parser.add_argument("--url", default="http://localhost:8000")
    parser.add_argument("--shop", required=True)
    parser.add_argument("--product", required=True)
    parser.add_argument("--variant", default=None)
    parser.add_argument("--qty", type=int, default=1)
    parser.add_argument("--orders", type=int, default=50)
    parser.add_argument("--workers", type=int, default=10)
    parser.add_argument("--report", default=None, help="Write full results as JSON")
    return parser


def main(argv=None):
    args = create_parser().parse_args(argv)
    output = run_trial(args)
    print(json.dumps(output["summary"], indent=4))
    if args.report:
        with open(args.report, "w") as f:
            json.dump(output, f, indent=4)
        print(f"Saved results to {args.report}")
    return 1 if output["summary"]["oversold"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
