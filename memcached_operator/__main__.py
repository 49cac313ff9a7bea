from memcached_operator.main import run

run()
