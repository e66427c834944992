from groupbuy import run_trial


def test_summarize_clean_run():
    results = [{"status": "success"}] * 2 + [{"status": "error", "reason": "INSUFFICIENT_STOCK"}] * 3
    summary = run_trial.summarize(results, qty=2, initial_stock=5, final_stock=1)
    assert summary["succeeded"] == 2
    assert summary["out_of_stock"] == 3
    assert summary["errors"] == 0
    assert summary["oversold"] is False
    assert summary["stock_consistent"] is True


def test_summarize_flags_oversell():
    results = [{"status": "success"}] * 4
    summary = run_trial.summarize(results, qty=2, initial_stock=5, final_stock=-3)
    assert summary["oversold"] is True


def test_place_order_network_error(monkeypatch):
    def boom(*args, **kwargs):
        raise run_trial.requests.ConnectionError("refused")

    monkeypatch.setattr(run_trial.requests, "post", boom)
    result = run_trial.place_order("http://localhost:1", {}, trial_id=7)
    assert result["trial"] == 7
    assert result["status"] == "error"
    assert result["reason"] == "NETWORK_ERROR"


def test_parser_defaults():
    args = run_trial.create_parser().parse_args(["--shop", "S", "--product", "P"])
    assert args.orders == 50
    assert args.qty == 1
    assert args.variant is None
