from datahub.broker.app.cli import invoke

invoke()
