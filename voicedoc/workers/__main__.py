from voicedoc.workers.main import run

run()
