from energy_trader.trader import run

run()
